"""
Turn Execution Runtime — advances a compiled graph by one turn.

A turn:
  1. appends the inbound message (if any) to the message log
  2. walks from the entry point, merging each node's patch channel-wise and
     following router-selected or static edges, until a node has no outgoing
     edge or an edge leads to the terminal marker
  3. post-processes the newest agent message of this turn (clarification
     acknowledgement, optional review)
  4. re-validates the state and returns it

The runtime keeps nothing between calls. Whether the conversation is
waiting for an answer, and to which question, lives in
session_context.awaiting_user / last_question_key; the graph's top-level
router reads those on the next turn.
"""
from __future__ import annotations

import inspect
from typing import Any, Mapping, Optional

import structlog

from models.state import ConversationState, MessageRole
from runtime.patches import patch_session, push_human
from runtime.reducers import apply_patch, validate_state
from services.review import TextReviewService, get_review_service
from workflow.behavior import activate
from workflow.compiler import CompiledGraph, CompiledNode
from workflow.definition import TERMINAL
from workflow.errors import ContractViolation, WalkLimitExceeded

logger = structlog.get_logger()

MAX_STEPS = 50  # node visits per turn; a longer walk means a routing cycle


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class TurnExecutor:
    """
    Runs turns against compiled graphs.

    The review collaborator is injected so tests and alternative deployments
    can swap it; by default the shared review service is used.
    """

    def __init__(self, reviewer: TextReviewService = None):
        self._reviewer = reviewer

    @property
    def reviewer(self) -> TextReviewService:
        return self._reviewer or get_review_service()

    async def run(
        self,
        graph: CompiledGraph,
        state: ConversationState,
        inbound_text: Optional[str] = None,
    ) -> ConversationState:
        prior = validate_state(state)
        current = prior
        if inbound_text is not None:
            current = apply_patch(current, push_human(current, inbound_text))
        first_new_message = len(current.messages)

        with activate(graph.behavior):
            current, path = await self._walk(graph, current)
            current = await self._post_process(graph, prior, current, first_new_message)

        current = apply_patch(current, patch_session(started=True, graph_id=graph.graph_id))
        result = validate_state(current)

        sc = result.session_context
        logger.info("turn_completed",
                    graph_id=graph.graph_id,
                    session_id=sc.session_id,
                    path=path,
                    awaiting_user=sc.awaiting_user,
                    last_question_key=sc.last_question_key,
                    messages_added=len(result.messages) - first_new_message)
        return result

    # ── Walk ──────────────────────────────────────────

    async def _walk(self, graph: CompiledGraph, state: ConversationState) -> tuple[ConversationState, list[str]]:
        path: list[str] = []
        node_id = graph.entry_point

        while node_id != TERMINAL:
            if len(path) >= MAX_STEPS:
                logger.error("walk_limit_exceeded", graph_id=graph.graph_id, path=path[-5:])
                raise WalkLimitExceeded(MAX_STEPS, path)
            path.append(node_id)

            state = await self._execute_node(graph.nodes[node_id], state)
            next_id = await self._next_node(graph, node_id, state)
            if next_id is None:
                break

            state = apply_patch(state, patch_session(
                transition_log=[*state.session_context.transition_log, f"{node_id}->{next_id}"],
            ))
            node_id = next_id

        return state, path

    async def _execute_node(self, node: CompiledNode, state: ConversationState) -> ConversationState:
        try:
            result = node.handler(state)
            patch = await _maybe_await(result)
        except Exception as e:
            logger.error("node_failed", node=node.id, handler=node.handler_ref, error=str(e))
            raise

        if patch is None:
            patch = {}
        if not isinstance(patch, Mapping):
            raise ContractViolation(
                f"Handler '{node.handler_ref}' for node '{node.id}' returned "
                f"{type(patch).__name__}, expected a channel patch mapping")

        merged = apply_patch(state, patch)
        logger.debug("node_completed", node=node.id, kind=node.kind.value,
                     channels=sorted(patch.keys()))
        return merged

    async def _next_node(self, graph: CompiledGraph, node_id: str, state: ConversationState) -> Optional[str]:
        conditional = graph.conditional_edges.get(node_id)
        if conditional is not None:
            key = await _maybe_await(conditional.router(state))
            destination = conditional.destinations.get(str(key)) if key is not None else None
            if destination is None:
                # Unmapped keys end the turn; the state already carries whatever
                # the node produced.
                logger.warning("router_key_unmatched",
                               graph_id=graph.graph_id, node=node_id,
                               router=conditional.router_ref, key=key)
                return None
            return destination
        return graph.static_edges.get(node_id)

    # ── Post-processing ───────────────────────────────

    async def _post_process(
        self,
        graph: CompiledGraph,
        prior: ConversationState,
        state: ConversationState,
        first_new_message: int,
    ) -> ConversationState:
        new_ai = [
            i for i in range(first_new_message, len(state.messages))
            if state.messages[i].role == MessageRole.AI
        ]
        if not new_ai:
            return state

        index = new_ai[-1]
        message = state.messages[index]
        text = message.content

        if prior.session_context.step_clarifier_used:
            ack = graph.behavior.acknowledgement(prior.session_context.primitive_counter)
            text = f"{ack} {text.strip()}" if text.strip() else ack

        policy = graph.behavior.policy_for(message.message_type)
        guardrail = []
        if policy.allow_review:
            try:
                text = await self.reviewer.review(text, policy)
            except Exception as e:
                logger.warning("message_review_failed",
                               message_type=message.message_type, error=str(e))
                guardrail.append("guardrail:fail:review")

        if text == message.content and not guardrail:
            return state

        messages = list(state.messages)
        messages[index] = message.model_copy(update={"content": text})
        patch: dict[str, Any] = {"messages": messages}
        if guardrail:
            patch["session_context"] = {
                "guardrail_log": [*state.session_context.guardrail_log, *guardrail],
            }
        return apply_patch(state, patch)


_default_executor = TurnExecutor()


async def run_turn(
    graph: CompiledGraph,
    state: ConversationState,
    inbound_text: Optional[str] = None,
    *,
    reviewer: TextReviewService = None,
) -> ConversationState:
    """Advance the conversation by one turn and return the new state."""
    executor = TurnExecutor(reviewer) if reviewer is not None else _default_executor
    return await executor.run(graph, state, inbound_text)
