"""Tests for workflow document parsing."""
import copy
import json

import pytest

from workflow.definition import (
    TERMINAL, NodeKind, WorkflowDefinition, load_definition, parse,
)
from workflow.errors import StructuralError

YAML_DOC = """
graph:
  graphId: yaml-graph
  version: 2
  entrypoint: a
stateContractRef: conversation.v1
nodes:
  - {id: a, kind: router, handlerRef: h.a}
transitions:
  static:
    - {from: a, terminal: true}
"""


class TestParse:
    def test_minimal_mapping(self, minimal_document):
        definition = parse(minimal_document)
        assert isinstance(definition, WorkflowDefinition)
        assert definition.graph.graph_id == "mini"
        assert definition.graph.entry_point == "greet"
        assert definition.node_ids == ["greet", "done"]
        assert definition.nodes[1].kind is NodeKind.TERMINAL

    def test_yaml_text_with_legacy_entrypoint_and_numeric_version(self):
        definition = parse(YAML_DOC)
        assert definition.graph.entry_point == "a"
        assert definition.graph.version == "2"
        assert definition.transitions.static[0].destination == TERMINAL

    def test_static_transition_destination(self, minimal_document):
        definition = parse(minimal_document)
        assert definition.transitions.static[0].destination == "done"

    def test_definition_is_frozen(self, minimal_document):
        definition = parse(minimal_document)
        with pytest.raises(Exception):
            definition.graph.graph_id = "other"

    def test_inline_config_keys(self, minimal_document):
        doc = copy.deepcopy(minimal_document)
        doc["config"] = {
            "questionTemplates": [{"key": "Q1", "question": "First?"}],
            "messagePolicy": {"question": {"allowAIRephrase": True}},
        }
        definition = parse(doc)
        assert definition.first_question_key == "Q1"
        assert definition.config.message_policy["question"].allow_review is True


class TestStructuralErrors:
    def test_missing_graph(self, minimal_document):
        doc = copy.deepcopy(minimal_document)
        del doc["graph"]
        with pytest.raises(StructuralError) as exc:
            parse(doc)
        assert any("graph" in p for p in exc.value.problems)

    def test_empty_nodes(self, minimal_document):
        doc = copy.deepcopy(minimal_document)
        doc["nodes"] = []
        with pytest.raises(StructuralError):
            parse(doc)

    def test_unknown_node_kind(self, minimal_document):
        doc = copy.deepcopy(minimal_document)
        doc["nodes"][0]["kind"] = "webhook"
        with pytest.raises(StructuralError):
            parse(doc)

    def test_duplicate_node_ids(self, minimal_document):
        doc = copy.deepcopy(minimal_document)
        doc["nodes"][1]["id"] = "greet"
        with pytest.raises(StructuralError, match="duplicate node ids"):
            parse(doc)

    def test_static_transition_needs_exactly_one_destination(self, minimal_document):
        doc = copy.deepcopy(minimal_document)
        doc["transitions"]["static"][0] = {"from": "greet", "to": "done", "terminal": True}
        with pytest.raises(StructuralError):
            parse(doc)
        doc["transitions"]["static"][0] = {"from": "greet"}
        with pytest.raises(StructuralError):
            parse(doc)

    def test_conditional_without_router_ref(self, minimal_document):
        doc = copy.deepcopy(minimal_document)
        doc["transitions"]["conditional"] = [{"from": "greet", "destinations": {"x": "done"}}]
        with pytest.raises(StructuralError):
            parse(doc)

    def test_conditional_destinations_must_be_mapping(self, minimal_document):
        doc = copy.deepcopy(minimal_document)
        doc["transitions"]["conditional"] = [
            {"from": "greet", "routerRef": "r", "destinations": ["done"]}]
        with pytest.raises(StructuralError):
            parse(doc)

    def test_non_mapping_document(self):
        with pytest.raises(StructuralError, match="mapping"):
            parse("- just\n- a list\n")

    def test_invalid_yaml(self):
        with pytest.raises(StructuralError):
            parse("graph: [unclosed")

    def test_structural_error_is_value_error(self):
        with pytest.raises(ValueError):
            parse({})


class TestLoadDefinition:
    def test_yaml_file(self, tmp_path):
        path = tmp_path / "graph.yaml"
        path.write_text(YAML_DOC)
        assert load_definition(path).graph.graph_id == "yaml-graph"

    def test_json_file(self, tmp_path, minimal_document):
        path = tmp_path / "graph.json"
        path.write_text(json.dumps(minimal_document))
        assert load_definition(str(path)).graph.graph_id == "mini"

    def test_bad_json_file(self, tmp_path):
        path = tmp_path / "graph.json"
        path.write_text("{not json")
        with pytest.raises(StructuralError):
            load_definition(path)
