"""Tests for dotted-path conditions and declarative routing rules."""
import pytest

from runtime.patches import patch_session, push_ai, push_human
from runtime.reducers import apply_patch
from utils.paths import evaluate_condition, get_nested_value
from workflow.definition import RoutingRule
from workflow.routing import NO_MATCH, evaluate_routing_rules, rules_router


class TestGetNestedValue:
    def test_flat_key(self):
        assert get_nested_value({"step": "S1"}, "step") == "S1"

    def test_nested_key(self):
        data = {"session_context": {"step": "S2", "index": 3}}
        assert get_nested_value(data, "session_context.step") == "S2"
        assert get_nested_value(data, "session_context.index") == 3

    def test_missing_keys(self):
        assert get_nested_value({"a": 1}, "b") is None
        assert get_nested_value({"a": {"b": 1}}, "a.c") is None
        assert get_nested_value({"a": 1}, "a.b") is None


class TestEvaluateCondition:
    @pytest.mark.parametrize("operator,value,actual,expected", [
        ("eq", "S1", "S1", True),
        ("eq", "S1", "S2", False),
        ("neq", "S1", "S2", True),
        ("gt", 2, 3, True),
        ("gt", 3, 3, False),
        ("gte", 3, 3, True),
        ("lt", 3, 2, True),
        ("lte", 2, 3, False),
        ("in", ["a", "b"], "a", True),
        ("contains", "b", ["a", "b"], True),
        ("contains", "x", None, False),
        ("regex", r"^S\d$", "S4", True),
        ("exists", None, 0, True),
        ("not_exists", None, None, True),
        ("empty", None, [], True),
        ("not_empty", None, ["x"], True),
        ("not_empty", None, None, False),
        ("length_gt", 1, ["a", "b"], True),
    ])
    def test_operators(self, operator, value, actual, expected):
        assert evaluate_condition("f", operator, value, {"f": actual}) is expected

    def test_numeric_string_is_coerced(self):
        assert evaluate_condition("n", "gt", 5, {"n": "10"})

    def test_type_errors_do_not_match(self):
        assert not evaluate_condition("n", "gt", 5, {"n": "ten"})
        assert not evaluate_condition("n", "gt", 5, {"n": None})

    def test_unknown_operator(self):
        assert not evaluate_condition("f", "approximately", 1, {"f": 1})


def rules(*raw):
    return [RoutingRule.model_validate(r) for r in raw]


class TestRoutingRules:
    def test_first_matching_rule_wins(self, state):
        picked = apply_patch(state, {"use_case_context": {"selected_use_cases": ["A"]}})
        router = rules_router(rules(
            {"when": [{"field": "use_case_context.selected_use_cases", "operator": "not_empty"}],
             "goto": "proceed"},
            {"when": [{"field": "session_context.session_id", "value": "session-1"}],
             "goto": "second"},
            {"default": "end"},
        ))
        assert router(picked) == "proceed"
        assert router(state) == "second"

    def test_all_conditions_must_hold(self, state):
        chosen = rules(
            {"when": [
                {"field": "session_context.tenant_id", "value": "acme"},
                {"field": "session_context.awaiting_user", "value": True},
            ], "goto": "wait"},
            {"default": "go"},
        )
        assert evaluate_routing_rules(chosen, state) == "go"
        waiting = apply_patch(state, patch_session(awaiting_user=True))
        assert evaluate_routing_rules(chosen, waiting) == "wait"

    def test_no_rule_matches(self, state):
        chosen = rules({"when": [{"field": "session_context.step", "value": "S9"}], "goto": "x"})
        assert evaluate_routing_rules(chosen, state) == NO_MATCH

    def test_derived_predicates(self, state):
        chosen = rules(
            {"when": [{"field": "messages_empty", "value": True}], "goto": "start"},
            {"when": [{"field": "last_answer_equals", "value": "YES"}], "goto": "confirmed"},
            {"when": [{"field": "trace_includes", "value": "loop:complete"}], "goto": "readout"},
            {"default": "end"},
        )
        assert evaluate_routing_rules(chosen, state) == "start"

        answered = apply_patch(state, push_human(state, " yes "))
        assert evaluate_routing_rules(chosen, answered) == "confirmed"

        traced = apply_patch(state, push_ai(state, "hi"))
        traced = apply_patch(traced, patch_session(reason_trace=["loop:complete"]))
        assert evaluate_routing_rules(chosen, traced) == "readout"

    def test_router_exposes_its_rules(self):
        chosen = rules({"default": "end"})
        assert rules_router(chosen).routing_rules is chosen

    def test_rule_needs_an_outcome(self):
        with pytest.raises(ValueError):
            RoutingRule.model_validate({"when": [{"field": "x"}]})
