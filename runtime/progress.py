"""
UI metadata derived from state: per-step progress and suggested replies.

Both read the graph's behavior config (meta.steps, progressRules, options)
and never modify state. A front door typically calls them after run_turn
to decorate the outbound message.
"""
from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field

from models.state import ConversationState, ReadoutStatus
from utils.paths import get_nested_value
from workflow.behavior import BehaviorConfig, current_behavior
from workflow.definition import CountingStrategy


class StepProgress(BaseModel):
    key: str
    label: str
    order: int
    status: str                      # completed | in_progress | upcoming
    countable: bool = False
    total_questions: int = 0
    answered_questions: int = 0
    percentage: int = 0


class FlowProgress(BaseModel):
    flow_title: str = ""
    flow_description: str = ""
    steps: list[StepProgress] = Field(default_factory=list)


def _answered(strategy: Optional[CountingStrategy], status: str, total: int,
              state: ConversationState, behavior: BehaviorConfig) -> tuple[int, int]:
    """(answered, total) for one countable step."""
    sc = state.session_context
    rules = behavior.progress_rules

    if status == "upcoming":
        if strategy is CountingStrategy.DYNAMIC_COUNT:
            items = get_nested_value(state.model_dump(), rules.dynamic_count_field) or []
            total = len(items) or total
        return 0, total
    if status == "completed" and strategy is not CountingStrategy.DYNAMIC_COUNT:
        return total, total

    if strategy is CountingStrategy.QUESTION_KEY_MAP:
        return rules.question_key_map.get(sc.last_question_key or "", 0), total
    if strategy is CountingStrategy.SELECTION:
        waiting = sc.awaiting_user and sc.last_question_key == rules.selection_question_key
        return (0 if waiting else 1), total
    if strategy is CountingStrategy.READOUT_READY:
        return (1 if state.readout_context.status == ReadoutStatus.READY else 0), total
    if strategy is CountingStrategy.DYNAMIC_COUNT:
        items = get_nested_value(state.model_dump(), rules.dynamic_count_field) or []
        total = len(items) or total
        answered = sum(1 for q in items if isinstance(q, dict) and q.get("response") is not None)
        if status == "completed":
            answered = total
        return answered, total
    return 0, total


def compute_flow_progress(state: ConversationState, behavior: Optional[BehaviorConfig] = None) -> FlowProgress:
    behavior = behavior or current_behavior()
    meta = behavior.meta
    order = [s.key for s in meta.steps]
    current = order.index(state.session_context.step) if state.session_context.step in order else -1

    steps = []
    for idx, step in enumerate(meta.steps):
        status = "completed" if idx < current else "in_progress" if idx == current else "upcoming"
        answered, total = 0, step.total_questions
        if step.countable:
            answered, total = _answered(step.counting_strategy, status, total, state, behavior)
        answered = max(0, min(answered, total))
        percentage = min(100, round(answered / total * 100)) if step.countable and total > 0 else 0
        steps.append(StepProgress(
            key=step.key,
            label=step.label,
            order=step.order,
            status=status,
            countable=step.countable,
            total_questions=total,
            answered_questions=answered,
            percentage=percentage,
        ))
    return FlowProgress(flow_title=meta.flow_title, flow_description=meta.flow_description, steps=steps)


def suggested_options(state: ConversationState, behavior: Optional[BehaviorConfig] = None) -> list[str]:
    """
    Quick replies for the pending question: configured options first, then
    the example generator. Nothing pending -> no suggestions.
    """
    behavior = behavior or current_behavior()
    sc = state.session_context
    key = sc.last_question_key
    if not sc.awaiting_user or not key:
        return []

    configured = behavior.options.get(key)
    if configured:
        return [f"{i}. {item}" for i, item in enumerate(configured, start=1)]

    values: dict[str, Any] = {"focus": state.use_case_context.focus or ""}
    return behavior.examples_for(key, **values)
