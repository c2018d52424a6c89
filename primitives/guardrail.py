"""
Guarded model calls.

ai_call_with_guardrail wraps one text-generation call: a missing client, an
empty answer or an unparseable answer all resolve to the caller's fallback,
and every outcome leaves a reason-trace marker:

    <trace_label>:ok | <trace_label>:fallback | <trace_label>:parse_fail

Non-ok outcomes also add `guardrail:fail:<guardrail_label>` to the guardrail
log. The caller merges the returned patch into its own.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Optional, TypeVar

import structlog

from models.state import ConversationState
from runtime.reducers import StatePatch
from services.llm import TextGenerationClient, get_text_generation_client
from workflow.behavior import current_behavior
from workflow.errors import CollaboratorFailure

logger = structlog.get_logger()

T = TypeVar("T")

_UNSET = object()


@dataclass
class GuardedResult(Generic[T]):
    value: T
    source: str                      # "ai" | "fallback"
    patch: StatePatch = field(default_factory=dict)

    @property
    def from_model(self) -> bool:
        return self.source == "ai"


async def ai_call_with_guardrail(
    state: ConversationState,
    *,
    system_prompt: str,
    user_prompt: str,
    fallback: T,
    trace_label: str,
    guardrail_label: Optional[str] = None,
    parse: Optional[Callable[[str], Any]] = None,
    client: Any = _UNSET,
    purpose: Optional[str] = None,
) -> GuardedResult[T]:
    """
    Call the model and return (value, source, patch).

    purpose selects a named entry from the graph's `models` config for the
    model name, temperature and retry count; without one the client's
    defaults apply.
    parse returning None counts as a parse failure.
    """
    if client is _UNSET:
        client = get_text_generation_client()
    guardrail_label = guardrail_label or trace_label

    outcome, value = await guarded_call(
        client, system_prompt, user_prompt, fallback,
        label=trace_label, parse=parse, purpose=purpose,
    )

    sc = state.session_context
    session: dict[str, Any] = {"reason_trace": [*sc.reason_trace, f"{trace_label}:{outcome}"]}
    if outcome != "ok":
        session["guardrail_log"] = [*sc.guardrail_log, f"guardrail:fail:{guardrail_label}"]
        logger.info("ai_guardrail_fallback", label=trace_label, outcome=outcome)

    return GuardedResult(
        value=value,
        source="ai" if outcome == "ok" else "fallback",
        patch={"session_context": session},
    )


def model_kwargs(purpose: Optional[str]) -> dict[str, Any]:
    """Model name, temperature and retry count for a named models entry."""
    model_config = current_behavior().model_for(purpose) if purpose else None
    if model_config is None:
        return {}
    return {"model": model_config.model, "temperature": model_config.temperature,
            "max_retries": model_config.max_retries}


async def guarded_call(
    client: Optional[TextGenerationClient],
    system_prompt: str,
    user_prompt: str,
    fallback: Any,
    *,
    label: str,
    parse: Optional[Callable[[str], Any]] = None,
    purpose: Optional[str] = None,
) -> tuple[str, Any]:
    """
    One model call reduced to (outcome, value) without touching state.
    Outcome is "ok", "fallback" or "parse_fail"; anything but "ok" carries
    the fallback value.
    """
    if client is None:
        return "fallback", fallback
    try:
        raw = await _invoke(client, system_prompt, user_prompt, label, model_kwargs(purpose))
    except CollaboratorFailure:
        raw = ""
    except Exception as e:
        logger.error("collaborator_call_failed",
                     collaborator="text_generation", run_name=label, error=str(e))
        raw = ""
    if not raw:
        return "fallback", fallback
    if parse is None:
        return "ok", raw
    try:
        parsed = parse(raw)
    except Exception as e:
        logger.warning("ai_parse_failed", label=label, error=str(e))
        parsed = None
    if parsed is None:
        return "parse_fail", fallback
    return "ok", parsed


async def _invoke(client: TextGenerationClient, system: str, user: str,
                  run_name: str, kwargs: dict[str, Any]) -> str:
    text = await client.invoke(system, user, run_name=run_name, **kwargs)
    return (text or "").strip()
