"""
Channel reducers — fold handler patches into ConversationState.

A patch is a plain dict keyed by channel name. Values may be pydantic models
or plain data; either way the merged result is re-validated against the
state contract, and any failure surfaces as ContractViolation.
"""
from __future__ import annotations

from typing import Any, Mapping, Optional

from pydantic import BaseModel, ValidationError

from models.state import ConversationState, ReducerStrategy, channel_reducer
from workflow.errors import ContractViolation

StatePatch = dict[str, Any]


def to_plain(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump()
    if isinstance(value, list):
        return [to_plain(v) for v in value]
    if isinstance(value, dict):
        return {k: to_plain(v) for k, v in value.items()}
    return value


def _check_channel(name: str):
    if name not in ConversationState.model_fields:
        raise ContractViolation(f"Patch targets unknown channel '{name}'")


def validate_state(data: Any) -> ConversationState:
    """Validate raw state data (or an existing state) against the contract."""
    try:
        if isinstance(data, ConversationState):
            return ConversationState.model_validate(data.model_dump())
        return ConversationState.model_validate(data)
    except ValidationError as e:
        raise ContractViolation(
            f"Conversation state failed validation: {e.error_count()} error(s)",
            errors=e.errors(),
        ) from e


def apply_patch(state: ConversationState, patch: Optional[Mapping[str, Any]]) -> ConversationState:
    """Merge one patch into state using each channel's reducer."""
    if not patch:
        return state

    data = state.model_dump()
    for name, value in patch.items():
        _check_channel(name)
        if value is None:
            continue
        value = to_plain(value)
        if channel_reducer(name) is ReducerStrategy.SHALLOW_MERGE:
            if not isinstance(value, dict):
                raise ContractViolation(
                    f"Channel '{name}' merges mappings, got {type(value).__name__}")
            data[name] = {**(data.get(name) or {}), **value}
        else:
            data[name] = value
    return validate_state(data)


def combine_patches(*patches: Optional[Mapping[str, Any]]) -> StatePatch:
    """
    Combine patches left to right without touching state. Shallow-merge
    channels accumulate keys; replace channels keep the last value.
    """
    out: StatePatch = {}
    for patch in patches:
        if not patch:
            continue
        for name, value in patch.items():
            _check_channel(name)
            if value is None:
                continue
            if (channel_reducer(name) is ReducerStrategy.SHALLOW_MERGE
                    and isinstance(out.get(name), dict)):
                out[name] = {**out[name], **to_plain(value)}
            else:
                out[name] = to_plain(value) if isinstance(value, BaseModel) else value
    return out
