"""
Node handlers for the discovery workflow.

Steps:
  STEP1_KNOW_YOUR_CUSTOMER     pick one or more use-case groups
  STEP2_NARROW_DOWN_USE_CASES  resolve candidate use cases, pick from the list
  STEP3_PERFORM_DISCOVERY      choose a focus, ask tailored questions
  STEP4_BUILD_READOUT          recap everything as a readout
  STEP5_WRAP_UP                close the conversation

Handlers return channel patches; prompts and wording come from the graph's
behavior config so the YAML can change them without code changes.
"""
from __future__ import annotations

import json
from typing import Any, Optional

import structlog

from flows.discovery import catalog
from models.state import ConversationState, ReadoutStatus
from primitives import (
    ResolveSource, Retrieved, SectionRequest, acknowledge_emotion, ai_call_with_guardrail,
    ask_question, cascading_resolve, multi_section_doc_builder, numeric_selection_ingest,
    questionnaire_loop, retrieve_select_fallback,
)
from runtime.patches import append_trace, patch_session, push_ai, update_channel
from runtime.reducers import StatePatch, apply_patch, combine_patches
from services.llm import get_text_generation_client, invoke_with_fallback
from services.retrieval import get_retrieval_service
from utils.text import (
    detect_sentiment, interpolate, numbered_list, sanitize_free_text, span_sanitizer, truncate_words,
)
from workflow.behavior import config_string, current_behavior, question_text

logger = structlog.get_logger()

S1_USE_CASE_GROUP = "S1_USE_CASE_GROUP"
S2_USE_CASE_SELECT = "S2_USE_CASE_SELECT"
S3_DISCOVERY_QUESTION = "S3_DISCOVERY_QUESTION"


class Steps:
    KNOW_YOUR_CUSTOMER = "STEP1_KNOW_YOUR_CUSTOMER"
    NARROW_DOWN_USE_CASES = "STEP2_NARROW_DOWN_USE_CASES"
    PERFORM_DISCOVERY = "STEP3_PERFORM_DISCOVERY"
    BUILD_READOUT = "STEP4_BUILD_READOUT"
    WRAP_UP = "STEP5_WRAP_UP"


DISCOVERY_TRACE = "discovery"
MAX_USE_CASES = 5
RISK_DOMAINS = {"compliance", "security", "financial", "operational"}


def available_groups() -> list[str]:
    return catalog.use_case_groups(current_behavior().options.get(S1_USE_CASE_GROUP))


def retry_text(question_key: str, fallback: str) -> str:
    return current_behavior().clarifier_retry_text.get(question_key) or fallback


def noop(state: ConversationState) -> StatePatch:
    return {}


# ──────────────────────────────────────────────────────────────
#  Step 1: use-case groups
# ──────────────────────────────────────────────────────────────

async def ask_use_case_group(state: ConversationState) -> StatePatch:
    behavior = current_behavior()
    groups = available_groups()
    question = question_text(S1_USE_CASE_GROUP, groups=numbered_list(groups)) or (
        "Which area would you like to explore? Reply with one or more numbers.\n"
        + numbered_list(groups))

    patch = await ask_question.run(
        state,
        question=question,
        question_key=S1_USE_CASE_GROUP,
        preamble=[config_string("intro.welcome", "Welcome! Let's find where automation can help most.")],
        prefix=behavior.prefix_for(state.overlay_active),
    )
    return combine_patches(patch, patch_session(step=Steps.KNOW_YOUR_CUSTOMER))


def ingest_use_case_group(state: ConversationState) -> StatePatch:
    return numeric_selection_ingest.run(
        state,
        available_items=available_groups(),
        question_key=S1_USE_CASE_GROUP,
        retry_message=retry_text(
            S1_USE_CASE_GROUP,
            "Please reply using only the number(s) shown in the list. For example: 1 or 1,3."),
        success_message=config_string("step1.groupConfirm") or None,
        state_field="use_case_context",
        item_key="use_case_groups",
    )


# ──────────────────────────────────────────────────────────────
#  Step 2: narrow down use cases
# ──────────────────────────────────────────────────────────────

def _query_text(state: ConversationState) -> str:
    parts = [state.user_context.goal_statement or "", *state.use_case_context.use_case_groups]
    return " ".join(p for p in parts if p).strip()


async def _allowed_use_cases(state: ConversationState) -> list[str]:
    return catalog.use_cases_for(state.use_case_context.use_case_groups)


async def _use_cases_from_vector(state: ConversationState, allowed: list[str]) -> list[str]:
    docs = await get_retrieval_service().search(
        _query_text(state),
        tenant_id=state.session_context.tenant_id,
        doc_types=["use_case"],
        top_k=MAX_USE_CASES * 2,
    )
    return [str(d.metadata.get("name") or d.content) for d in docs]


async def _use_cases_from_model(state: ConversationState, allowed: list[str]) -> list[str]:
    client = get_text_generation_client()
    if client is None:
        return []
    behavior = current_behavior()
    system = behavior.ai_prompts.get(
        "rankUseCases",
        "Rank the use cases by relevance to the user's goal. Return one use case name per line, "
        "copied exactly from the list.")
    user = (f"Goal: {state.user_context.goal_statement or 'not stated'}\n"
            f"Groups: {', '.join(state.use_case_context.use_case_groups)}\n"
            f"Use cases:\n{numbered_list(allowed)}")
    raw = await invoke_with_fallback(client, system, user, fallback="", run_name="rankUseCases")
    return [line.lstrip("0123456789.-) ").strip() for line in raw.splitlines() if line.strip()]


def _use_case_update(state: ConversationState):
    def build(items: list[str]) -> StatePatch:
        return update_channel(state, "use_case_context", use_cases_prioritized=items[:MAX_USE_CASES])
    return build


async def resolve_use_cases(state: ConversationState) -> StatePatch:
    return await cascading_resolve.run(
        state,
        sources=[
            ResolveSource("vector", _use_cases_from_vector),
            ResolveSource("ai", _use_cases_from_model),
        ],
        fetch_allowed=_allowed_use_cases,
        build_state_update=_use_case_update(state),
        trace_prefix="resolve_use_cases",
        next_step=Steps.NARROW_DOWN_USE_CASES,
    )


async def ask_use_case_select(state: ConversationState) -> StatePatch:
    use_cases = state.use_case_context.use_cases_prioritized
    if not use_cases:
        return combine_patches(
            push_ai(state, config_string("step2.noUseCases",
                                         "No matching use cases were found at this time.")),
            patch_session(awaiting_user=False, last_question_key=None),
        )

    question = question_text(S2_USE_CASE_SELECT, use_cases=numbered_list(use_cases)) or (
        "Which of these use cases should we focus on?\n" + numbered_list(use_cases))
    return await ask_question.run(state, question=question, question_key=S2_USE_CASE_SELECT)


def ingest_use_case_select(state: ConversationState) -> StatePatch:
    return numeric_selection_ingest.run(
        state,
        available_items=state.use_case_context.use_cases_prioritized,
        question_key=S2_USE_CASE_SELECT,
        retry_message=retry_text(
            S2_USE_CASE_SELECT,
            "Please reply using only the number(s) shown in the list. For example: 1 or 1,3."),
        success_message=config_string(
            "step2.selectionConfirm", "Great, we'll focus on the selected use case(s) next."),
        state_field="use_case_context",
        item_key="selected_use_cases",
    )


# ──────────────────────────────────────────────────────────────
#  Step 3: discovery
# ──────────────────────────────────────────────────────────────

async def _retrieve_focus_candidates(state: ConversationState) -> Retrieved:
    selected = list(state.use_case_context.selected_use_cases)
    if not selected:
        return Retrieved()
    docs = await get_retrieval_service().search(
        " ".join(selected),
        tenant_id=state.session_context.tenant_id,
        doc_types=["use_case", "discovery_question"],
    )
    return Retrieved(candidates=selected, context=[d.content for d in docs if d.content])


async def _select_focus(state: ConversationState, candidates: list[str], context: list[str]) -> Optional[str]:
    if len(candidates) == 1:
        return candidates[0]
    client = get_text_generation_client()
    if client is None:
        return None
    system = current_behavior().ai_prompts.get(
        "selectFocus",
        "Pick the single use case discovery should focus on first. Return its name exactly as listed.")
    user = (f"Goal: {state.user_context.goal_statement or 'not stated'}\n"
            f"Use cases:\n{numbered_list(candidates)}\n"
            f"Context:\n" + "\n".join(context[:6]))
    raw = await client.invoke(system, user, run_name="selectFocus")
    raw = raw.strip().strip('"')
    for candidate in candidates:
        if candidate.lower() == raw.lower():
            return candidate
    return raw or None


def _first_or_none(candidates: list[str]) -> Optional[str]:
    return candidates[0] if candidates else None


def _focus_update(state: ConversationState):
    def build(focus: Optional[str], context: list[str]) -> StatePatch:
        questions = [{"question": q} for q in catalog.questions_for(focus)]
        return combine_patches(
            update_channel(state, "use_case_context", focus=focus, discovery_questions=questions),
            update_channel(state, "vector_context",
                           query=" ".join(state.use_case_context.selected_use_cases) or None,
                           snippets=context),
            patch_session(step=Steps.PERFORM_DISCOVERY),
        )
    return build


async def select_discovery_focus(state: ConversationState) -> StatePatch:
    return await retrieve_select_fallback.run(
        state,
        retrieve=_retrieve_focus_candidates,
        select=_select_focus,
        fallback=_first_or_none,
        build_state_update=_focus_update(state),
        trace_prefix="discovery_focus",
    )


def _parse_risk(raw: str) -> Optional[dict[str, Any]]:
    data = json.loads(raw)
    statement = str(data.get("risk_statement") or "").strip()
    domain = str(data.get("risk_domain") or "").strip().lower()
    if data.get("risk_detected") is not True or not statement or domain not in RISK_DOMAINS:
        return {}
    return {"risk": truncate_words(" ".join(statement.split()), 20), "risk_domain": domain}


async def assess_answer_risk(
    state: ConversationState, question: str, answer: str,
) -> tuple[dict[str, Any], StatePatch]:
    """Flag compliance / security / financial / operational risk in one answer."""
    system = current_behavior().ai_prompts.get(
        "assessRisk",
        'Decide whether the answer reveals a business risk. Reply with JSON: '
        '{"risk_detected": bool, "risk_statement": str, "risk_domain": '
        '"compliance"|"security"|"financial"|"operational"}')
    user = "\n".join([
        f"question: {question}",
        f"answer: {answer}",
        f"industry: {state.user_context.industry or ''}",
        f"goal: {state.user_context.goal_statement or ''}",
        f"use_cases: {' | '.join(state.use_case_context.selected_use_cases)}",
    ])
    result = await ai_call_with_guardrail(
        state,
        system_prompt=system,
        user_prompt=user,
        fallback={},
        trace_label="assess_risk",
        parse=_parse_risk,
        purpose="sanitizer",
    )
    return result.value, result.patch


async def process_discovery_answer(
    state: ConversationState, question: str, answer: str,
) -> tuple[dict[str, Any], StatePatch]:
    """Risk fields for the answer, plus its guardrail markers and tone."""
    fields, risk_patch = await assess_answer_risk(state, question, answer)
    assessed = apply_patch(state, risk_patch)
    sentiment = detect_sentiment(answer)
    tone = acknowledge_emotion.run(assessed, sentiment=sentiment, speak=sentiment != "neutral")
    return fields, combine_patches(risk_patch, tone)


def _discovery_prompt(question: str, index: int, total: int) -> str:
    template = config_string("step3.questionPrompt", "Question {{number}} of {{total}}: {{question}}")
    return interpolate(template, {"number": index + 1, "total": total, "question": question})


async def discovery_loop(state: ConversationState) -> StatePatch:
    """Start or resume the discovery questionnaire."""
    use_cases = state.use_case_context
    total = len(use_cases.discovery_questions)
    intro = interpolate(
        config_string("step3.intro",
                      "Now let's dig into {{focus}}. There are {{total}} short questions, one at a time."),
        {"focus": span_sanitizer(use_cases.focus, "your selected use cases"), "total": total},
    )
    patch = await questionnaire_loop.run(
        state,
        questions=use_cases.discovery_questions,
        question_key=S3_DISCOVERY_QUESTION,
        build_prompt=_discovery_prompt,
        state_field="use_case_context",
        item_key="discovery_questions",
        sanitize_answer=sanitize_free_text,
        process_answer=process_discovery_answer,
        intro_message=intro,
        closing_message=config_string(
            "step3.closingMessage", "Thanks, that helps. Next we'll prepare your readout."),
        trace_prefix=DISCOVERY_TRACE,
    )
    trace = patch.get("session_context", {}).get("reason_trace", [])
    step = Steps.BUILD_READOUT if f"{DISCOVERY_TRACE}:complete" in trace else Steps.PERFORM_DISCOVERY
    return combine_patches(patch, patch_session(step=step))


# ──────────────────────────────────────────────────────────────
#  Step 4 / 5: readout and wrap-up
# ──────────────────────────────────────────────────────────────

DEFAULT_SECTION_KEYS = ["use_cases", "focus", "discovery", "risks"]

SECTION_TITLES = {
    "use_cases": "Selected use cases",
    "focus": "Focus",
    "discovery": "What we heard",
    "risks": "Risks to watch",
}


def _readout_facts(state: ConversationState) -> dict[str, str]:
    ctx = state.use_case_context
    answered = [q for q in ctx.discovery_questions if q.response]
    risks = [f"{q.risk} ({q.risk_domain})" for q in ctx.discovery_questions if q.risk]
    return {
        "use_cases": ", ".join(ctx.selected_use_cases) or "None selected",
        "focus": ctx.focus or "Not set",
        "discovery": "\n".join(f"- {q.question} {q.response}" for q in answered) or "No answers recorded",
        "risks": "\n".join(f"- {r}" for r in risks) or "No risks flagged",
    }


def _section_title(key: str) -> str:
    return config_string(f"readout.section.{key}",
                         SECTION_TITLES.get(key, key.replace("_", " ").capitalize()))


def _style_profile() -> str:
    voice = current_behavior().readout_voice
    parts = [
        f"Perspective: {voice.role_perspective}." if voice.role_perspective else "",
        f"Voice: {voice.voice_characteristics}." if voice.voice_characteristics else "",
        f"Intent: {voice.behavioral_intent}." if voice.behavioral_intent else "",
    ]
    return " ".join(p for p in parts if p)


def _section_request(facts: dict[str, str], key: str) -> SectionRequest:
    behavior = current_behavior()
    title = _section_title(key)
    body = facts.get(key, "")
    system = " ".join(p for p in [
        behavior.ai_prompts.get(
            "buildReadoutSection",
            "Write one section of a readout for the user from the facts given. "
            "Return only the section text, starting with its title."),
        f"Section: {title}.",
        f"Section contract: {behavior.readout.section_contract}."
        if behavior.readout.section_contract else "",
        _style_profile(),
    ] if p)
    user = "\n".join([f"section: {key}", *(f"{k}: {v}" for k, v in facts.items())])
    if not body:
        fallback = ""
    elif "\n" in body or body.startswith("- "):
        fallback = f"{title}:\n{body}"
    else:
        fallback = f"{title}: {body}"
    return SectionRequest(system_prompt=system, user_prompt=user, fallback=fallback)


def _parse_style_findings(raw: str) -> dict[str, str]:
    data = json.loads(raw)
    if data.get("pass", True):
        return {}
    return {
        str(r.get("section_key")): str(r.get("instruction") or "")
        for r in data.get("repairs") or []
        if r.get("section_key") and r.get("instruction")
    }


async def _style_check(draft: str) -> dict[str, str]:
    client = get_text_generation_client()
    system = current_behavior().ai_prompts.get(
        "readoutStyleQa",
        'Check the readout against the style profile. Reply with JSON: {"pass": bool, '
        '"repairs": [{"section_key": str, "instruction": str}]}')
    raw = await client.invoke(system, f"style_profile: {_style_profile()}\n\n{draft}",
                              run_name="readoutStyleQa")
    return _parse_style_findings(raw)


async def _repair_section(key: str, text: str, instruction: str) -> str:
    system = current_behavior().ai_prompts.get(
        "repairReadoutSection",
        "Rewrite the readout section following the instruction. Return only the section text.")
    return await invoke_with_fallback(
        get_text_generation_client(), system, f"instruction: {instruction}\n\n{text}", text,
        run_name=f"repairSection:{key}")


async def build_readout(state: ConversationState) -> StatePatch:
    """Write the readout one configured section at a time."""
    behavior = current_behavior()
    facts = _readout_facts(state)
    section_keys = behavior.readout.section_keys or DEFAULT_SECTION_KEYS
    intro = config_string("readout.intro", "Here is your readout.")
    delivery_targets = behavior.delivery_targets(state.session_context.tenant_id)

    def build_output(sections: dict[str, str], draft: str) -> StatePatch:
        summary = f"{intro}\n\n{draft}" if intro else draft
        return combine_patches(
            push_ai(state, summary, "readout"),
            {"readout_context": {
                "status": ReadoutStatus.READY,
                "summary": summary,
                "sections": sections,
                "delivery_targets": delivery_targets,
            }},
            patch_session(step=Steps.BUILD_READOUT, awaiting_user=False, last_question_key=None),
        )

    return await multi_section_doc_builder.run(
        state,
        section_keys=section_keys,
        build_section=lambda key: _section_request(facts, key),
        build_output=build_output,
        trace_label="build_readout",
        guardrail_label="readout",
        purpose="readout",
        qa_check=_style_check,
        repair_section=_repair_section,
    )


def wrap_up(state: ConversationState) -> StatePatch:
    trace = state.session_context.reason_trace
    if "wrap_up:done" in trace:
        text = config_string("wrapUp.followUp", "Your readout is ready. Start a new session to explore another area.")
        return push_ai(state, text, "closing")

    text = config_string("wrapUp.message", "Thanks for your time. Your readout is ready to download.")
    return combine_patches(
        push_ai(state, text, "closing"),
        patch_session(step=Steps.WRAP_UP, awaiting_user=False, last_question_key=None),
        append_trace(state, "wrap_up:done"),
    )
