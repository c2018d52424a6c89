"""
Declarative routers.

A conditional transition's routerRef normally names a registered function.
When no function is registered under that key but the definition's config
declares `routingRules` for it, the compiler builds a router from the
rules instead:

    routingRules:
      discovery.after_use_case_selection:
        - when: [{field: use_case_context.selected_use_cases, operator: not_empty}]
          goto: proceed
        - default: end

Rules are checked in order; the first whose conditions all hold wins.
Besides dotted state paths, a few predicates look at derived facts:
  messages_empty, trace_includes, trace_not_includes, last_answer_equals
"""
from __future__ import annotations

from typing import Any, Callable

from models.state import ConversationState, MessageRole
from utils.paths import evaluate_condition
from workflow.definition import RoutingCondition, RoutingRule

NO_MATCH = "end"


def _last_answer(state: ConversationState) -> str:
    for message in reversed(state.messages):
        if message.role == MessageRole.HUMAN:
            return message.content.strip().lower()
    return ""


_PREDICATES: dict[str, Callable[[ConversationState, Any], bool]] = {
    "messages_empty": lambda s, v: (len(s.messages) == 0) == bool(v),
    "trace_includes": lambda s, v: isinstance(v, str) and v in s.session_context.reason_trace,
    "trace_not_includes": lambda s, v: isinstance(v, str) and v not in s.session_context.reason_trace,
    "last_answer_equals": lambda s, v: isinstance(v, str) and _last_answer(s) == v.lower(),
}


def _holds(condition: RoutingCondition, state: ConversationState, data: dict[str, Any]) -> bool:
    predicate = _PREDICATES.get(condition.field)
    if predicate is not None:
        return predicate(state, condition.value)
    return evaluate_condition(condition.field, condition.operator, condition.value, data)


def evaluate_routing_rules(rules: list[RoutingRule], state: ConversationState) -> str:
    data = state.model_dump(mode="json")
    for rule in rules:
        if rule.when:
            if rule.goto and all(_holds(c, state, data) for c in rule.when):
                return rule.goto
        else:
            return rule.default if rule.default is not None else rule.goto
    return NO_MATCH


def rules_router(rules: list[RoutingRule]) -> Callable[[ConversationState], str]:
    def router(state: ConversationState) -> str:
        return evaluate_routing_rules(rules, state)
    router.routing_rules = rules
    return router
