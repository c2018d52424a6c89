"""
Compute primitives — deterministic resolution with graceful fallbacks.

  CascadingResolve        try sources in order, keep the first non-empty
                          result that survives validation, else the full set
  RetrieveSelectFallback  retrieve candidates, let a selector choose, fall
                          back when anything goes wrong
  MultiSectionDocBuilder  build a document section by section, each section
                          with its own fallback text

None of them lets a collaborator exception escape; failures turn into
reason-trace and guardrail markers.
"""
from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

import structlog

from models.state import ConversationState
from primitives.base import Primitive
from primitives.guardrail import guarded_call
from runtime.patches import append_guardrail, append_trace, patch_session
from runtime.reducers import StatePatch, combine_patches
from services.llm import get_text_generation_client

logger = structlog.get_logger()

Fetch = Callable[..., Union[Any, Awaitable[Any]]]

_UNSET = object()


async def _call(fn: Fetch, *args: Any) -> Any:
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


def keep_allowed(items: Sequence[str], allowed: Sequence[str]) -> list[str]:
    """Items present in allowed (case-insensitive), in the allowed set's spelling, deduplicated."""
    canonical = {a.strip().lower(): a for a in allowed}
    out: list[str] = []
    for item in items:
        match = canonical.get(str(item).strip().lower())
        if match is not None and match not in out:
            out.append(match)
    return out


@dataclass(frozen=True)
class ResolveSource:
    name: str
    fetch: Fetch


class CascadingResolve(Primitive):
    """
    Resolve a list from several sources of decreasing preference.

    fetch_allowed gives the permitted set. Each source is fetched in order;
    its items are validated against the permitted set and the first non-empty
    result is committed. If every source fails the permitted set itself is
    committed and the fallback is recorded as a guardrail failure.
    """
    name = "CascadingResolve"
    template_id = "cascading_resolve_v1"

    async def run(
        self,
        state: ConversationState,
        *,
        sources: Sequence[ResolveSource],
        fetch_allowed: Fetch,
        build_state_update: Callable[[list[str]], StatePatch],
        trace_prefix: str,
        validate: Callable[[Sequence[str], Sequence[str]], list[str]] = keep_allowed,
        next_step: Optional[str] = None,
    ) -> StatePatch:
        t0 = self.start()
        step = patch_session(step=next_step) if next_step else None

        try:
            allowed = list(await _call(fetch_allowed, state) or [])
        except Exception as e:
            logger.warning("resolve_allowed_failed", prefix=trace_prefix, error=str(e))
            allowed = []

        if not allowed:
            out = combine_patches(
                build_state_update([]),
                step,
                append_trace(state, f"{trace_prefix}:empty"),
                append_guardrail(state, f"guardrail:fail:{trace_prefix}_empty"),
            )
            return self.finish(state, out, t0, "fail", branch="empty")

        for source in sources:
            try:
                items = list(await _call(source.fetch, state, allowed) or [])
            except Exception as e:
                logger.warning("resolve_source_failed", prefix=trace_prefix,
                               source=source.name, error=str(e))
                continue
            if not items:
                continue
            valid = validate(items, allowed)
            if valid:
                out = combine_patches(
                    build_state_update(valid),
                    step,
                    append_trace(state, f"{trace_prefix}:{source.name}_ok"),
                )
                return self.finish(state, out, t0, branch=source.name, resolved=len(valid))

        out = combine_patches(
            build_state_update(allowed),
            step,
            append_trace(state, f"{trace_prefix}:fallback"),
            append_guardrail(state, f"guardrail:fail:{trace_prefix}_fallback"),
        )
        return self.finish(state, out, t0, "fail", branch="fallback", resolved=len(allowed))


# ──────────────────────────────────────────────────────────────
#  Retrieve → select → fallback
# ──────────────────────────────────────────────────────────────

@dataclass
class Retrieved:
    candidates: list[Any] = field(default_factory=list)
    context: list[str] = field(default_factory=list)


class RetrieveSelectFallback(Primitive):
    """
    retrieve(state) -> Retrieved | (candidates, context) | candidates
    select(state, candidates, context) -> one candidate or None
    fallback(candidates) -> value used when selection is unusable
    build_state_update(value, context) -> patch

    A retrieval failure or an empty candidate list falls back with no
    candidates; a selector failure, a None selection or a selection outside
    the candidates falls back with the candidates.
    """
    name = "RetrieveSelectFallback"
    template_id = "retrieve_select_fallback_v1"

    async def run(
        self,
        state: ConversationState,
        *,
        retrieve: Fetch,
        select: Fetch,
        fallback: Callable[[list[Any]], Any],
        build_state_update: Callable[[Any, list[str]], StatePatch],
        trace_prefix: str,
    ) -> StatePatch:
        t0 = self.start()

        try:
            retrieved = _as_retrieved(await _call(retrieve, state))
        except Exception as e:
            logger.warning("retrieve_failed", prefix=trace_prefix, error=str(e))
            return self._fallback(state, t0, fallback([]), [], build_state_update,
                                  trace_prefix, "retrieve_error")

        candidates, context = retrieved.candidates, retrieved.context
        if not candidates:
            return self._fallback(state, t0, fallback([]), context, build_state_update,
                                  trace_prefix, "empty")

        try:
            selected = await _call(select, state, candidates, context)
        except Exception as e:
            logger.warning("select_failed", prefix=trace_prefix, error=str(e))
            return self._fallback(state, t0, fallback(candidates), context, build_state_update,
                                  trace_prefix, "select_error")

        if selected is None:
            return self._fallback(state, t0, fallback(candidates), context, build_state_update,
                                  trace_prefix, "no_selection")
        if selected not in candidates:
            logger.info("selection_rejected", prefix=trace_prefix, selected=str(selected))
            return self._fallback(state, t0, fallback(candidates), context, build_state_update,
                                  trace_prefix, "out_of_set")

        out = combine_patches(
            build_state_update(selected, context),
            append_trace(state, f"{trace_prefix}:selected"),
        )
        return self.finish(state, out, t0, branch="selected")

    def _fallback(self, state, t0, value, context, build_state_update, prefix, reason) -> StatePatch:
        out = combine_patches(
            build_state_update(value, context),
            append_trace(state, f"{prefix}:fallback"),
            append_guardrail(state, f"guardrail:fail:{prefix}_{reason}"),
        )
        return self.finish(state, out, t0, "fail", branch="fallback", reason=reason)


def _as_retrieved(value: Any) -> Retrieved:
    if isinstance(value, Retrieved):
        return value
    if isinstance(value, tuple) and len(value) == 2:
        return Retrieved(list(value[0] or []), list(value[1] or []))
    return Retrieved(list(value or []), [])


# ──────────────────────────────────────────────────────────────
#  Sectioned documents
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SectionRequest:
    system_prompt: str
    user_prompt: str
    fallback: str


def _join_sections(keys: Sequence[str], sections: dict[str, str]) -> str:
    return "\n\n".join(sections[k] for k in keys if sections.get(k, "").strip())


class MultiSectionDocBuilder(Primitive):
    """
    Build a document one section at a time.

    build_section(key) -> SectionRequest for every key in section_keys. Each
    section is one guarded model call that falls back to the request's own
    fallback text; sections are joined in order with blank lines, empty ones
    left out. With qa_check(draft) -> {section_key: instruction} and
    repair_section(key, text, instruction) -> text, a draft with findings
    gets those sections rewritten once; a QA or repair error keeps the draft
    as built. build_output(sections, draft) -> patch.

    Trace: <trace_label>:ok when every section came from the model,
    :partial when some did, :fallback when none did. Anything but ok adds
    guardrail:fail:<guardrail_label>.
    """
    name = "MultiSectionDocBuilder"
    template_id = "multi_section_doc_v1"

    async def run(
        self,
        state: ConversationState,
        *,
        section_keys: Sequence[str],
        build_section: Fetch,
        build_output: Callable[[dict[str, str], str], StatePatch],
        trace_label: str,
        guardrail_label: Optional[str] = None,
        client: Any = _UNSET,
        purpose: Optional[str] = None,
        qa_check: Optional[Fetch] = None,
        repair_section: Optional[Fetch] = None,
    ) -> StatePatch:
        t0 = self.start()
        if client is _UNSET:
            client = get_text_generation_client()
        keys = list(section_keys)

        sections: dict[str, str] = {}
        from_model = 0
        for key in keys:
            request = await _call(build_section, key)
            outcome, text = await guarded_call(
                client, request.system_prompt, request.user_prompt, request.fallback,
                label=f"{trace_label}:{key}", purpose=purpose,
            )
            sections[key] = text
            from_model += outcome == "ok"
        draft = _join_sections(keys, sections)

        repaired: list[str] = []
        if client is not None and qa_check is not None and repair_section is not None:
            try:
                findings = dict(await _call(qa_check, draft) or {})
                revised = dict(sections)
                for key, instruction in findings.items():
                    if key in revised:
                        revised[key] = await _call(repair_section, key, revised[key], instruction)
                        repaired.append(key)
                sections = revised
                draft = _join_sections(keys, sections)
            except Exception as e:
                logger.warning("doc_qa_failed", label=trace_label, error=str(e))
                repaired = []

        if keys and from_model == len(keys):
            outcome = "ok"
        elif from_model:
            outcome = "partial"
        else:
            outcome = "fallback"

        out = combine_patches(
            build_output(sections, draft),
            append_trace(state, f"{trace_label}:{outcome}"),
            (None if outcome == "ok"
             else append_guardrail(state, f"guardrail:fail:{guardrail_label or trace_label}")),
        )
        return self.finish(state, out, t0, "pass" if outcome == "ok" else "fail",
                           branch=outcome, sections=len(keys), repaired=repaired)


cascading_resolve = CascadingResolve()
retrieve_select_fallback = RetrieveSelectFallback()
multi_section_doc_builder = MultiSectionDocBuilder()
