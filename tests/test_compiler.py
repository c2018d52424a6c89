"""Tests for graph compilation and preflight checks."""
import copy

import pytest

from workflow.behavior import BehaviorConfig, DEFAULT_CLARIFICATION_ACK
from workflow.compiler import compile_graph
from workflow.definition import TERMINAL, parse
from workflow.errors import StructuralError, UnresolvedReferenceError, UnsupportedContractError
from workflow.registry import RegistryKind

from conftest import noop_handler


async def async_handler(state):
    return {}


def route_always_x(state):
    return "x"


@pytest.fixture
def mini_registry(registry):
    registry.register(RegistryKind.HANDLER, "mini.greet", noop_handler)
    registry.register(RegistryKind.HANDLER, "mini.done", async_handler)
    return registry


class TestCompileSuccess:
    def test_node_set_matches_definition(self, minimal_document, mini_registry):
        graph = compile_graph(minimal_document, mini_registry)
        assert graph.node_ids == {"greet", "done"}
        assert graph.entry_point == "greet"
        assert graph.static_edges == {"greet": "done", "done": TERMINAL}
        assert graph.conditional_edges == {}

    def test_async_handlers_are_flagged(self, minimal_document, mini_registry):
        graph = compile_graph(minimal_document, mini_registry)
        assert graph.nodes["done"].is_async
        assert not graph.nodes["greet"].is_async

    def test_accepts_parsed_definition_and_yaml_path(self, minimal_document, mini_registry, tmp_path):
        import yaml
        path = tmp_path / "mini.yaml"
        path.write_text(yaml.safe_dump(minimal_document))
        assert compile_graph(parse(minimal_document), mini_registry).graph_id == "mini"
        assert compile_graph(path, mini_registry).graph_id == "mini"
        assert compile_graph(str(path), mini_registry).graph_id == "mini"

    def test_conditional_edge_wins_over_static(self, minimal_document, mini_registry):
        doc = copy.deepcopy(minimal_document)
        doc["transitions"]["conditional"] = [
            {"from": "greet", "routerRef": "mini.route", "destinations": {"x": TERMINAL}}]
        mini_registry.register(RegistryKind.ROUTER, "mini.route", route_always_x)
        graph = compile_graph(doc, mini_registry)
        assert "greet" not in graph.static_edges
        assert graph.conditional_edges["greet"].router is route_always_x

    def test_first_static_edge_wins(self, minimal_document, mini_registry):
        doc = copy.deepcopy(minimal_document)
        doc["transitions"]["static"].append({"from": "greet", "terminal": True})
        graph = compile_graph(doc, mini_registry)
        assert graph.static_edges["greet"] == "done"


class TestPreflightFailures:
    def test_missing_handler(self, minimal_document, registry):
        registry.register(RegistryKind.HANDLER, "mini.greet", noop_handler)
        with pytest.raises(UnresolvedReferenceError) as exc:
            compile_graph(minimal_document, registry)
        assert exc.value.key == "mini.done"
        assert "node 'done'" in exc.value.context

    def test_unsupported_contract_checked_first(self, minimal_document, registry):
        doc = copy.deepcopy(minimal_document)
        doc["stateContractRef"] = "conversation.v0"
        with pytest.raises(UnsupportedContractError):
            compile_graph(doc, registry)

    def test_undeclared_entry_point(self, minimal_document, mini_registry):
        doc = copy.deepcopy(minimal_document)
        doc["graph"]["entryPoint"] = "nowhere"
        with pytest.raises(StructuralError, match="Entry point"):
            compile_graph(doc, mini_registry)

    def test_missing_router(self, minimal_document, mini_registry):
        doc = copy.deepcopy(minimal_document)
        doc["transitions"]["conditional"] = [
            {"from": "greet", "routerRef": "mini.missing", "destinations": {"x": "done"}}]
        with pytest.raises(UnresolvedReferenceError) as exc:
            compile_graph(doc, mini_registry)
        assert exc.value.kind == "router"

    def test_router_destination_must_exist(self, minimal_document, mini_registry):
        doc = copy.deepcopy(minimal_document)
        doc["transitions"]["conditional"] = [
            {"from": "greet", "routerRef": "mini.route", "destinations": {"x": "ghost"}}]
        mini_registry.register(RegistryKind.ROUTER, "mini.route", route_always_x)
        with pytest.raises(StructuralError, match="ghost"):
            compile_graph(doc, mini_registry)

    def test_static_endpoint_must_exist(self, minimal_document, mini_registry):
        doc = copy.deepcopy(minimal_document)
        doc["transitions"]["static"].append({"from": "phantom", "to": "done"})
        with pytest.raises(StructuralError, match="phantom"):
            compile_graph(doc, mini_registry)

    def test_two_conditional_edges_from_one_node(self, minimal_document, mini_registry):
        doc = copy.deepcopy(minimal_document)
        edge = {"from": "greet", "routerRef": "mini.route", "destinations": {"x": "done"}}
        doc["transitions"]["conditional"] = [edge, dict(edge)]
        mini_registry.register(RegistryKind.ROUTER, "mini.route", route_always_x)
        with pytest.raises(StructuralError, match="more than one"):
            compile_graph(doc, mini_registry)

    def test_missing_config_fn(self, minimal_document, mini_registry):
        doc = copy.deepcopy(minimal_document)
        doc["runtimeConfigRefs"] = {"exampleGeneratorRef": "mini.examples"}
        with pytest.raises(UnresolvedReferenceError) as exc:
            compile_graph(doc, mini_registry)
        assert exc.value.kind == "config_fn"


class TestDeclarativeRouters:
    def test_routing_rules_stand_in_for_missing_router(self, minimal_document, mini_registry, state):
        doc = copy.deepcopy(minimal_document)
        doc["transitions"]["conditional"] = [
            {"from": "greet", "routerRef": "mini.rules", "destinations": {"go": "done", "end": TERMINAL}}]
        doc["config"] = {"routingRules": {"mini.rules": [
            {"when": [{"field": "session_context.session_id", "operator": "eq", "value": "session-1"}],
             "goto": "go"},
            {"default": "end"},
        ]}}
        graph = compile_graph(doc, mini_registry)
        assert graph.conditional_edges["greet"].router(state) == "go"

    def test_registered_router_takes_precedence(self, minimal_document, mini_registry):
        doc = copy.deepcopy(minimal_document)
        doc["transitions"]["conditional"] = [
            {"from": "greet", "routerRef": "mini.route", "destinations": {"x": "done"}}]
        doc["config"] = {"routingRules": {"mini.route": [{"default": "end"}]}}
        mini_registry.register(RegistryKind.ROUTER, "mini.route", route_always_x)
        graph = compile_graph(doc, mini_registry)
        assert graph.conditional_edges["greet"].router is route_always_x


class TestBehaviorConfig:
    def test_inline_config_wins_and_provider_is_not_called(self, minimal_document, mini_registry):
        calls = []

        def provider():
            calls.append(1)
            return {"strings": {"hello": "from provider"}}

        mini_registry.register(RegistryKind.CONFIG_PROVIDER, "mini.init", provider)
        doc = copy.deepcopy(minimal_document)
        doc["runtimeConfigRefs"] = {"initConfigRef": "mini.init"}
        doc["config"] = {"strings": {"hello": "inline"}}
        graph = compile_graph(doc, mini_registry)
        assert graph.behavior.source == "inline"
        assert graph.behavior.string("hello") == "inline"
        assert calls == []

    def test_provider_used_without_inline_config(self, minimal_document, mini_registry):
        mini_registry.register(RegistryKind.CONFIG_PROVIDER, "mini.init",
                               lambda: {"strings": {"hello": "from provider"}})
        doc = copy.deepcopy(minimal_document)
        doc["runtimeConfigRefs"] = {"initConfigRef": "mini.init", "modelAliases": {"fast": "default"}}
        graph = compile_graph(doc, mini_registry)
        assert graph.behavior.source == "provider"
        assert graph.behavior.string("hello") == "from provider"
        assert graph.behavior.model_aliases == {"fast": "default"}

    def test_provider_may_return_behavior_config(self, minimal_document, mini_registry):
        mini_registry.register(RegistryKind.CONFIG_PROVIDER, "mini.init",
                               lambda: BehaviorConfig(strings={"k": "v"}))
        doc = copy.deepcopy(minimal_document)
        doc["runtimeConfigRefs"] = {"initConfigRef": "mini.init"}
        assert compile_graph(doc, mini_registry).behavior.string("k") == "v"

    def test_provider_bad_return_type(self, minimal_document, mini_registry):
        mini_registry.register(RegistryKind.CONFIG_PROVIDER, "mini.init", lambda: 42)
        doc = copy.deepcopy(minimal_document)
        doc["runtimeConfigRefs"] = {"initConfigRef": "mini.init"}
        with pytest.raises(StructuralError):
            compile_graph(doc, mini_registry)

    def test_missing_provider_fails_even_with_inline_config(self, minimal_document, mini_registry):
        doc = copy.deepcopy(minimal_document)
        doc["runtimeConfigRefs"] = {"initConfigRef": "mini.absent"}
        doc["config"] = {"strings": {"hello": "inline"}}
        with pytest.raises(UnresolvedReferenceError):
            compile_graph(doc, mini_registry)

    def test_default_behavior_without_config(self, minimal_document, mini_registry):
        behavior = compile_graph(minimal_document, mini_registry).behavior
        assert behavior.source == "default"
        assert behavior.acknowledgement(3) == DEFAULT_CLARIFICATION_ACK

    def test_config_fns_are_resolved(self, minimal_document, mini_registry):
        mini_registry.register(RegistryKind.CONFIG_FN, "mini.examples", lambda key, **v: [f"{key}-ex"])
        mini_registry.register(RegistryKind.CONFIG_FN, "mini.prefix", lambda overlay: f"[{overlay}]")
        doc = copy.deepcopy(minimal_document)
        doc["runtimeConfigRefs"] = {"exampleGeneratorRef": "mini.examples",
                                    "overlayPrefixRef": "mini.prefix"}
        behavior = compile_graph(doc, mini_registry).behavior
        assert behavior.examples_for("Q1") == ["Q1-ex"]
        assert behavior.prefix_for("exec") == "[exec]"

    def test_inline_examples_win_for_listed_keys(self, minimal_document, mini_registry):
        mini_registry.register(RegistryKind.CONFIG_FN, "mini.examples", lambda key, **v: ["generated"])
        doc = copy.deepcopy(minimal_document)
        doc["runtimeConfigRefs"] = {"exampleGeneratorRef": "mini.examples"}
        doc["config"] = {"exampleTemplates": {"Q1": ["about {{topic}}"]}}
        behavior = compile_graph(doc, mini_registry).behavior
        assert behavior.examples_for("Q1", topic="billing") == ["about billing"]
        assert behavior.examples_for("Q2") == ["generated"]

    def test_delivery_targets(self, minimal_document, mini_registry):
        doc = copy.deepcopy(minimal_document)
        doc["config"] = {"delivery": {"outputTargets": ["download", "email"],
                                      "overridesByTenant": {"acme": ["crm", "email"]}}}
        behavior = compile_graph(doc, mini_registry).behavior
        assert behavior.delivery_targets() == ["download", "email"]
        assert behavior.delivery_targets("acme") == ["crm", "email"]

        doc["config"]["delivery"]["allowMultiTarget"] = False
        single = compile_graph(doc, mini_registry).behavior
        assert single.delivery_targets("acme") == ["crm"]
        assert BehaviorConfig().delivery_targets() == ["download"]


class TestReferenceGraph:
    def test_compiles_with_every_node(self, reference_graph):
        definition = reference_graph.definition
        assert reference_graph.node_ids == set(definition.node_ids)
        assert reference_graph.behavior.source == "inline"
        assert reference_graph.behavior.first_question_key == "S1_USE_CASE_GROUP"

    def test_post_selection_routers_come_from_rules(self, reference_graph):
        router = reference_graph.conditional_edges["ingest_use_case_select"].router
        assert hasattr(router, "routing_rules")
