"""
Conversation primitives — asking, capturing and dispatching answers.

  QuestionnaireLoop       walk a numbered question list one answer per turn
  NumericSelectionIngest  accept "1" / "1,3" replies against a numbered list
  AskQuestion             emit a question and mark the session as awaiting it
  IngestDispatcher        route an answer to the handler for the question asked
  ClarifyIfVague          ask for clarification when a captured value is vague
  AcknowledgeEmotion      answer the tone of a reply and track sentiment and trust

Waiting for the user is expressed only through session_context
(awaiting_user + last_question_key); none of these keep state of their own.
"""
from __future__ import annotations

import inspect
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

import structlog

from models.state import ConversationState, DiscoveryQuestion
from primitives.base import Primitive
from runtime.patches import (
    append_guardrail, append_trace, last_human_text, patch_session, push_ai, update_channel,
)
from runtime.reducers import StatePatch, apply_patch, combine_patches
from services.llm import TextGenerationClient, get_text_generation_client, invoke_with_fallback
from utils.text import (
    detect_sentiment, parse_numeric_selection_indices, sanitize_free_text,
    sanitize_numeric_selection_input,
)
from workflow.behavior import config_string, current_behavior

logger = structlog.get_logger()

NO_QUESTIONS_MESSAGE = "We don't have questions available right now."

Hook = Callable[..., Union[Any, Awaitable[Any]]]


async def _call(fn: Hook, *args: Any, **kwargs: Any) -> Any:
    result = fn(*args, **kwargs)
    if inspect.isawaitable(result):
        result = await result
    return result


# ──────────────────────────────────────────────────────────────
#  Answer-capture loop
# ──────────────────────────────────────────────────────────────

class QuestionnaireLoop(Primitive):
    """
    Present questions one at a time and record each answer at its index.

    Not awaiting this loop's key: emit optional intro + first question.
    Awaiting: sanitize the latest reply. Empty -> repeat the same question.
    Otherwise store it plus the fields process_answer returns (a (fields, patch)
    pair also merges the patch, e.g. guardrail markers), then either ask the
    next question or close the loop.
    """
    name = "QuestionnaireLoop"
    template_id = "questionnaire_loop_v1"

    async def run(
        self,
        state: ConversationState,
        *,
        questions: list[Union[DiscoveryQuestion, Mapping[str, Any]]],
        question_key: str,
        build_prompt: Callable[[str, int, int], str],
        state_field: str,
        item_key: str,
        sanitize_answer: Callable[[str], str] = sanitize_free_text,
        process_answer: Optional[Hook] = None,
        intro_message: Optional[str] = None,
        closing_message: Optional[str] = None,
        empty_message: str = NO_QUESTIONS_MESSAGE,
        trace_prefix: str = "questionnaire",
    ) -> StatePatch:
        t0 = self.start()
        items = [DiscoveryQuestion.model_validate(q) for q in questions]
        items = [q for q in items if q.question.strip()]
        total = len(items)

        if total == 0:
            out = combine_patches(
                push_ai(state, empty_message),
                patch_session(awaiting_user=False, last_question_key=None),
                append_trace(state, f"{trace_prefix}:empty"),
            )
            return self.finish(state, out, t0, branch="empty")

        sc = state.session_context
        awaiting = sc.awaiting_user and sc.last_question_key == question_key
        if not awaiting:
            base = state
            if intro_message:
                base = apply_patch(state, push_ai(state, intro_message))
            out = combine_patches(
                push_ai(base, build_prompt(items[0].question, 0, total), "question"),
                patch_session(step_question_index=0, awaiting_user=True,
                              last_question_key=question_key),
                append_trace(state, f"{trace_prefix}:start"),
                update_channel(state, state_field, **{item_key: items}),
            )
            return self.finish(state, out, t0, branch="start", total=total)

        index = min(sc.step_question_index, total - 1)
        answer = sanitize_answer(last_human_text(state))
        if not answer:
            out = combine_patches(
                push_ai(state, build_prompt(items[index].question, index, total), "question"),
                patch_session(awaiting_user=True, last_question_key=question_key),
            )
            return self.finish(state, out, t0, branch="retry", index=index)

        extra: dict[str, Any] = {}
        hook_patch: StatePatch = {}
        guardrail = "pass"
        if process_answer is not None:
            try:
                extra, hook_patch = _split_hook_result(
                    await _call(process_answer, state, items[index].question, answer))
            except Exception as e:
                logger.warning("answer_hook_failed", primitive=self.name,
                               question_key=question_key, error=str(e))
                extra, hook_patch = {}, {}
                guardrail = "fail"
        base = apply_patch(state, hook_patch)

        updated = list(items)
        updated[index] = items[index].model_copy(update={"response": answer, **extra})
        hook_marker = (None if guardrail == "pass"
                       else append_guardrail(base, f"guardrail:fail:{trace_prefix}_answer_hook"))

        next_index = index + 1
        if next_index < total:
            out = combine_patches(
                hook_patch,
                push_ai(base, build_prompt(items[next_index].question, next_index, total), "question"),
                update_channel(base, state_field, **{item_key: updated}),
                patch_session(step_question_index=next_index, awaiting_user=True,
                              last_question_key=question_key, step_clarifier_used=False),
                hook_marker,
            )
            return self.finish(state, out, t0, guardrail, branch="advance", index=next_index)

        out = combine_patches(
            hook_patch,
            push_ai(base, closing_message) if closing_message else None,
            update_channel(base, state_field, **{item_key: updated}),
            patch_session(step_question_index=0, awaiting_user=False, last_question_key=None,
                          step_clarifier_used=False),
            append_trace(base, f"{trace_prefix}:complete"),
            hook_marker,
        )
        return self.finish(state, out, t0, guardrail, branch="complete")


def _split_hook_result(result: Any) -> tuple[dict[str, Any], StatePatch]:
    """An answer hook returns item fields, or (fields, state patch)."""
    if isinstance(result, tuple):
        fields, patch = result
        return dict(fields or {}), dict(patch or {})
    return dict(result or {}), {}


# ──────────────────────────────────────────────────────────────
#  Numbered selection
# ──────────────────────────────────────────────────────────────

class NumericSelectionIngest(Primitive):
    """
    Parse a numbered reply ("2", "1,3", "1 3") against available items.
    Invalid text, an out-of-range number or an empty selection re-emits the
    retry message, keeps waiting on the same question and leaves the
    accumulator untouched.
    """
    name = "NumericSelectionIngest"
    template_id = "numeric_selection_ingest_v1"

    def run(
        self,
        state: ConversationState,
        *,
        available_items: list[str],
        question_key: str,
        retry_message: str,
        state_field: str,
        item_key: str,
        success_message: Optional[str] = None,
        max_selections: Optional[int] = None,
    ) -> StatePatch:
        t0 = self.start()
        normalized, invalid = sanitize_numeric_selection_input(last_human_text(state))
        indices = None if invalid else parse_numeric_selection_indices(normalized, len(available_items))
        if indices and max_selections:
            indices = indices[:max_selections]

        selected = [available_items[i - 1] for i in (indices or []) if available_items[i - 1].strip()]
        if not selected:
            out = combine_patches(
                push_ai(state, retry_message, "retry"),
                patch_session(awaiting_user=True, last_question_key=question_key,
                              step_clarifier_used=True),
                append_trace(state, f"{question_key}:retry"),
            )
            return self.finish(state, out, t0, "retry", branch="retry")

        out = combine_patches(
            push_ai(state, success_message, "confirmation") if success_message else None,
            update_channel(state, state_field, **{item_key: selected}),
            patch_session(awaiting_user=False, last_question_key=None, step_clarifier_used=False),
            append_trace(state, f"{question_key}:selected"),
        )
        return self.finish(state, out, t0, branch="selected", selected=len(selected))


# ──────────────────────────────────────────────────────────────
#  Asking
# ──────────────────────────────────────────────────────────────

class AskQuestion(Primitive):
    """
    Emit a question and wait for it. With rephrase=True the model may reword
    the question for the user's context; the base wording is the fallback.
    """
    name = "AskQuestion"
    template_id = "ask_question_v1"

    async def run(
        self,
        state: ConversationState,
        *,
        question: str,
        question_key: str,
        preamble: Optional[list[str]] = None,
        prefix: str = "",
        message_type: str = "question",
        rephrase: bool = False,
        rephrase_context: Optional[Mapping[str, Any]] = None,
        client: Optional[TextGenerationClient] = None,
    ) -> StatePatch:
        t0 = self.start()

        text = question
        if rephrase:
            context = dict(rephrase_context or {})
            context.setdefault("industry", state.user_context.industry)
            context.setdefault("role", state.user_context.persona_role)
            context.setdefault("use_case_groups", state.use_case_context.use_case_groups)
            system = current_behavior().ai_prompts.get(
                "rephraseQuestion",
                "Rephrase the question for this user in one or two sentences. "
                "Keep its meaning and any numbering. Return only the question.",
            )
            user = f"Question: {question}\nContext: {context}"
            text = await invoke_with_fallback(
                client or get_text_generation_client(), system, user,
                fallback=question, run_name="rephraseQuestion")

        base = state
        for line in preamble or []:
            base = apply_patch(base, push_ai(base, line))
        full = f"{prefix}\n{text}".strip() if prefix else text

        out = combine_patches(
            push_ai(base, full, message_type),
            patch_session(last_question_key=question_key, awaiting_user=True,
                          step_clarifier_used=False),
        )
        return self.finish(state, out, t0, question_key=question_key)


class IngestDispatcher(Primitive):
    """Route the latest answer to the handler registered for the question asked."""
    name = "IngestDispatcher"
    template_id = "ingest_dispatcher_v1"

    async def run(
        self,
        state: ConversationState,
        *,
        handlers: Mapping[str, Hook],
        last_question_key: Optional[str] = None,
    ) -> StatePatch:
        t0 = self.start()
        key = last_question_key or state.session_context.last_question_key or ""
        handler = handlers.get(key)
        if handler is None:
            logger.debug("ingest_no_handler", question_key=key)
            return self.finish(state, {}, t0, branch="no_handler")

        result = await _call(handler, state) or {}
        return self.finish(state, result, t0, question_key=key)


class ClarifyIfVague(Primitive):
    """
    When a captured value is vague, fetch suggestions and ask the user to
    pick or restate. Any failure while fetching leaves the state as-is.
    """
    name = "ClarifyIfVague"
    template_id = "clarify_if_vague_v1"

    async def run(
        self,
        state: ConversationState,
        *,
        value: str,
        is_vague: Hook,
        fetch_suggestions: Hook,
        build_clarification_message: Callable[[str, list[str]], str],
        question_key: str,
        build_examples_message: Optional[Callable[[list[str]], str]] = None,
        extra_patch: Optional[Callable[[list[str]], StatePatch]] = None,
    ) -> StatePatch:
        t0 = self.start()
        if not await _call(is_vague, value):
            return self.finish(state, {}, t0, branch="clear")

        try:
            suggestions = list(await _call(fetch_suggestions, value) or [])
        except Exception as e:
            logger.warning("clarify_suggestions_failed", question_key=question_key, error=str(e))
            return self.finish(state, {}, t0, "fail", branch="suggestions_failed")
        if not suggestions:
            return self.finish(state, {}, t0, branch="no_suggestions")

        align = apply_patch(state, push_ai(state, build_clarification_message(value, suggestions), "clarifier"))
        examples = (build_examples_message(suggestions) if build_examples_message
                    else f"For instance: {', '.join(suggestions)}.")
        out = combine_patches(
            push_ai(align, examples, "clarifier"),
            patch_session(step_clarifier_used=True, awaiting_user=True,
                          last_question_key=question_key),
            extra_patch(suggestions) if extra_patch else None,
        )
        return self.finish(state, out, t0, branch="clarify")


# ──────────────────────────────────────────────────────────────
#  Tone
# ──────────────────────────────────────────────────────────────

SENTIMENT_SCORES = {"concerned": 0.3, "neutral": 0.5, "positive": 0.8}

EMOTION_ACKNOWLEDGEMENTS = {
    "concerned": "Understood. That pressure is real. We'll keep this tight and focused now.",
    "positive": "Understood. That clarity helps us move faster.",
    "neutral": "Understood.",
}


class AcknowledgeEmotion(Primitive):
    """
    Acknowledge the tone of the user's reply and fold it into
    relationship_context.

    sentiment_score takes the detected tone's score. trust_score blends the
    mean sentiment of the last few primitive runs (0.8) with the previous
    trust (0.2). Wording comes from `acknowledge.<sentiment>` strings when
    the graph config has them.
    """
    name = "AcknowledgeEmotion"
    template_id = "acknowledge_emotion_v1"

    def run(
        self,
        state: ConversationState,
        *,
        sentiment: Optional[str] = None,
        answer: Optional[str] = None,
        speak: bool = True,
    ) -> StatePatch:
        t0 = self.start()
        if sentiment not in SENTIMENT_SCORES:
            sentiment = detect_sentiment(answer if answer is not None else last_human_text(state))
        score = SENTIMENT_SCORES[sentiment]

        recent = [e.sentiment_score for e in state.session_context.primitive_log[-4:]] + [score]
        mean = sum(recent) / len(recent)
        trust = 0.8 * mean + 0.2 * state.relationship_context.trust_score
        out = update_channel(state, "relationship_context",
                             trust_score=round(min(1.0, max(0.0, trust)), 3),
                             sentiment_score=score)
        if speak:
            text = config_string(f"acknowledge.{sentiment}", EMOTION_ACKNOWLEDGEMENTS[sentiment])
            out = combine_patches(push_ai(state, text, "acknowledgement"), out)
        return self.finish(state, out, t0, branch=sentiment)


questionnaire_loop = QuestionnaireLoop()
numeric_selection_ingest = NumericSelectionIngest()
ask_question = AskQuestion()
ingest_dispatcher = IngestDispatcher()
clarify_if_vague = ClarifyIfVague()
acknowledge_emotion = AcknowledgeEmotion()
