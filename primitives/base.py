"""
Primitive base — shared telemetry for reusable handler building blocks.

Every primitive returns a state patch. finish() folds the patch into the
incoming state, appends a PrimitiveLogEntry and bumps primitive_counter,
returning the patch with the complete updated session_context so callers
can merge it as usual.
"""
from __future__ import annotations

import time
from typing import Any, Optional

import structlog

from models.state import ConversationState, PrimitiveLogEntry
from runtime.reducers import StatePatch, apply_patch

logger = structlog.get_logger()


def now_ms() -> float:
    return time.time() * 1000.0


class Primitive:
    """
    Subclasses implement run(state, ...) either as a plain method or as a
    coroutine, returning the patch from self.finish().
    """
    name: str = ""
    template_id: str = ""

    def start(self) -> float:
        return now_ms()

    def finish(
        self,
        state: ConversationState,
        patch: Optional[StatePatch],
        t0: float,
        guardrail_status: str = "pass",
        **log: Any,
    ) -> StatePatch:
        patch = dict(patch or {})
        merged = apply_patch(state, patch)
        sc = merged.session_context
        entry = PrimitiveLogEntry(
            primitive_name=self.name,
            template_id=self.template_id,
            start_time=t0,
            end_time=now_ms(),
            overlay_active=merged.overlay_active,
            trust_score=merged.relationship_context.trust_score,
            sentiment_score=merged.relationship_context.sentiment_score,
            guardrail_status=guardrail_status,
        )
        session = sc.model_dump()
        session["primitive_counter"] = sc.primitive_counter + 1
        session["primitive_log"] = [*session["primitive_log"], entry.model_dump()]
        patch["session_context"] = session
        logger.debug("primitive_completed", primitive=self.name,
                     session_id=sc.session_id, **log)
        return patch
