"""
Routers for the discovery workflow.

dispatch is the top-level router: it runs first on every turn and decides,
from state alone, whether this is a fresh conversation, an answer to a
pending question, or time to move past a finished stage.

discovery_loop always ends the turn, whether the questionnaire is still
waiting or just finished; dispatch picks the loop up again on the next
message. Post-selection routing is declared as routingRules in the YAML.
"""
from __future__ import annotations

from flows.discovery.handlers import (
    DISCOVERY_TRACE, S1_USE_CASE_GROUP, S2_USE_CASE_SELECT, S3_DISCOVERY_QUESTION,
)
from models.state import ConversationState, ReadoutStatus
from runtime.patches import has_ai_message

INGEST_BY_QUESTION_KEY = {
    S1_USE_CASE_GROUP: "ingest_group",
    S2_USE_CASE_SELECT: "ingest_use_case",
    S3_DISCOVERY_QUESTION: "ingest_discovery",
}


def dispatch(state: ConversationState) -> str:
    sc = state.session_context
    if not has_ai_message(state):
        return "start"

    if sc.awaiting_user:
        return INGEST_BY_QUESTION_KEY.get(sc.last_question_key or "", "end")

    if state.readout_context.status == ReadoutStatus.READY:
        return "wrap_up"
    if f"{DISCOVERY_TRACE}:complete" in sc.reason_trace:
        return "build_readout"
    if not state.use_case_context.use_case_groups:
        return "start"
    return "end"


def discovery_loop(state: ConversationState) -> str:
    return "end"
