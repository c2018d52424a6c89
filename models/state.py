"""
Conversation state contract.

State is partitioned into channels. Every channel declares how a handler's
partial output is folded into it:

  replace        the patch value replaces the channel wholesale
  shallow_merge  top-level keys of the patch overwrite the channel's keys

The runtime reads the strategy from each field's schema extras, so adding a
channel only means declaring it here.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


STATE_CONTRACT_REF = "conversation.v1"
SUPPORTED_CONTRACTS = [STATE_CONTRACT_REF]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ReducerStrategy(str, Enum):
    REPLACE = "replace"
    SHALLOW_MERGE = "shallow_merge"


class MessageRole(str, Enum):
    HUMAN = "human"
    AI = "ai"


class ReadoutStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"


class _Channel(BaseModel):
    model_config = ConfigDict(extra="forbid")


# ──────────────────────────────────────────────────────────────
#  Messages
# ──────────────────────────────────────────────────────────────

class ChatMessage(_Channel):
    role: MessageRole
    content: str
    message_type: Optional[str] = None      # review policy key, e.g. "question"


# ──────────────────────────────────────────────────────────────
#  Session / control metadata
# ──────────────────────────────────────────────────────────────

class PrimitiveLogEntry(_Channel):
    primitive_name: str
    template_id: str = ""
    start_time: float
    end_time: float
    overlay_active: Optional[str] = None
    trust_score: float = 0.0
    sentiment_score: float = 0.0
    guardrail_status: str = "pass"


class SessionContext(_Channel):
    session_id: str = Field(min_length=1)
    tenant_id: Optional[str] = None
    graph_id: Optional[str] = None
    step: Optional[str] = None
    step_question_index: int = Field(default=0, ge=0)
    step_clarifier_used: bool = False
    last_question_key: Optional[str] = None
    awaiting_user: bool = False
    started: bool = False
    primitive_counter: int = Field(default=0, ge=0)
    primitive_log: list[PrimitiveLogEntry] = Field(default_factory=list)
    reason_trace: list[str] = Field(default_factory=list)
    guardrail_log: list[str] = Field(default_factory=list)
    transition_log: list[str] = Field(default_factory=list)


# ──────────────────────────────────────────────────────────────
#  Collected facts and accumulators
# ──────────────────────────────────────────────────────────────

class UserContext(_Channel):
    first_name: Optional[str] = None
    industry: Optional[str] = None
    persona_role: Optional[str] = None
    timeframe: Optional[str] = None
    goal_statement: Optional[str] = None


class DiscoveryQuestion(_Channel):
    question: str
    response: Optional[str] = None
    risk: Optional[str] = None
    risk_domain: Optional[str] = None


class UseCaseContext(_Channel):
    use_case_groups: list[str] = Field(default_factory=list)
    use_cases_prioritized: list[str] = Field(default_factory=list)
    selected_use_cases: list[str] = Field(default_factory=list)
    discovery_questions: list[DiscoveryQuestion] = Field(default_factory=list)
    focus: Optional[str] = None


class RelationshipContext(_Channel):
    trust_score: float = Field(default=0.5, ge=0.0, le=1.0)
    sentiment_score: float = Field(default=0.5, ge=0.0, le=1.0)


class VectorContext(_Channel):
    query: Optional[str] = None
    snippets: list[str] = Field(default_factory=list)


class ReadoutContext(_Channel):
    status: ReadoutStatus = ReadoutStatus.PENDING
    summary: Optional[str] = None
    sections: dict[str, str] = Field(default_factory=dict)
    delivery_targets: list[str] = Field(default_factory=list)


# ──────────────────────────────────────────────────────────────
#  Full state
# ──────────────────────────────────────────────────────────────

def _reducer(strategy: ReducerStrategy) -> dict[str, Any]:
    return {"reducer": strategy.value}


class ConversationState(BaseModel):
    """
    Immutable snapshot of one session. Each turn produces a new instance;
    the caller persists it and feeds it back on the next inbound message.
    """
    model_config = ConfigDict(extra="forbid", frozen=True)

    messages: list[ChatMessage] = Field(
        default_factory=list, json_schema_extra=_reducer(ReducerStrategy.REPLACE))
    session_context: SessionContext = Field(
        json_schema_extra=_reducer(ReducerStrategy.SHALLOW_MERGE))
    user_context: UserContext = Field(
        default_factory=UserContext, json_schema_extra=_reducer(ReducerStrategy.REPLACE))
    use_case_context: UseCaseContext = Field(
        default_factory=UseCaseContext, json_schema_extra=_reducer(ReducerStrategy.REPLACE))
    relationship_context: RelationshipContext = Field(
        default_factory=RelationshipContext, json_schema_extra=_reducer(ReducerStrategy.REPLACE))
    vector_context: VectorContext = Field(
        default_factory=VectorContext, json_schema_extra=_reducer(ReducerStrategy.REPLACE))
    readout_context: ReadoutContext = Field(
        default_factory=ReadoutContext, json_schema_extra=_reducer(ReducerStrategy.REPLACE))
    overlay_active: Optional[str] = Field(
        default=None, json_schema_extra=_reducer(ReducerStrategy.REPLACE))


def channel_reducer(channel: str) -> ReducerStrategy:
    """Return the merge strategy declared for a state channel."""
    field = ConversationState.model_fields[channel]
    extra = field.json_schema_extra if isinstance(field.json_schema_extra, dict) else {}
    return ReducerStrategy(extra.get("reducer", ReducerStrategy.REPLACE.value))


def create_initial_state(session_id: str, tenant_id: Optional[str] = None) -> ConversationState:
    """Fresh state for a new session; nothing asked, nothing awaited."""
    return ConversationState(
        session_context=SessionContext(session_id=session_id, tenant_id=tenant_id),
    )
