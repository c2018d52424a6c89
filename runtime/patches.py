"""Small builders for the patches handlers and primitives return."""
from __future__ import annotations

from typing import Any, Optional

from models.state import ChatMessage, ConversationState, MessageRole
from runtime.reducers import StatePatch, to_plain


def push_ai(state: ConversationState, text: str, message_type: Optional[str] = None) -> StatePatch:
    """Append an agent message to the message log."""
    message = ChatMessage(role=MessageRole.AI, content=text, message_type=message_type)
    return {"messages": [*state.messages, message]}


def push_human(state: ConversationState, text: str) -> StatePatch:
    return {"messages": [*state.messages, ChatMessage(role=MessageRole.HUMAN, content=text)]}


def last_human_message(state: ConversationState) -> Optional[ChatMessage]:
    for message in reversed(state.messages):
        if message.role == MessageRole.HUMAN:
            return message
    return None


def last_human_text(state: ConversationState) -> str:
    message = last_human_message(state)
    return message.content.strip() if message else ""


def has_ai_message(state: ConversationState) -> bool:
    return any(m.role == MessageRole.AI for m in state.messages)


def patch_session(**updates: Any) -> StatePatch:
    """Session context patch; the shallow-merge reducer keeps untouched keys."""
    return {"session_context": updates}


def append_trace(state: ConversationState, *markers: str) -> StatePatch:
    return {"session_context": {
        "reason_trace": [*state.session_context.reason_trace, *markers],
    }}


def append_guardrail(state: ConversationState, *entries: str) -> StatePatch:
    return {"session_context": {
        "guardrail_log": [*state.session_context.guardrail_log, *entries],
    }}


def update_channel(state: ConversationState, channel: str, **fields: Any) -> StatePatch:
    """Copy a replace-style channel with some fields changed."""
    current = getattr(state, channel).model_dump()
    return {channel: {**current, **to_plain(fields)}}
