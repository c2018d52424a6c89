"""
Workflow definition schema — the declarative graph document.

parse() checks shape only: required sections, non-empty node list, closed
set of node kinds, unique node ids, well-formed transitions. It never looks
at the registry and never performs I/O; resolvability is the compiler's job.

Documents use camelCase keys (graphId, handlerRef, routerRef ...); the
models expose them as snake_case attributes.
"""
from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional, Union

import structlog
import yaml
from pydantic import (
    AliasChoices, BaseModel, ConfigDict, Field, ValidationError,
    field_validator, model_validator,
)
from pydantic.alias_generators import to_camel

from workflow.errors import StructuralError

logger = structlog.get_logger()

TERMINAL = "__end__"


class _DocModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


# ──────────────────────────────────────────────────────────────
#  Inline behavior configuration
# ──────────────────────────────────────────────────────────────

class StepDef(_DocModel):
    id: str = Field(min_length=1)
    label: str = Field(min_length=1)


class ModelConfig(_DocModel):
    model: str = Field(min_length=1)
    temperature: float = Field(default=0.4, ge=0.0, le=2.0)
    max_retries: int = Field(default=1, ge=0)


class MessagePolicyEntry(_DocModel):
    allow_review: bool = Field(
        default=False,
        validation_alias=AliasChoices("allowReview", "allowAIRephrase", "allow_review"),
    )
    forbid_first_person: bool = False


class QuestionTemplate(_DocModel):
    key: str = Field(min_length=1)
    question: str = Field(min_length=1)


class ReadoutVoice(_DocModel):
    role_perspective: str = "Coach_Affirmative"
    voice_characteristics: str = ""
    behavioral_intent: str = ""


class ReadoutConfig(_DocModel):
    section_keys: list[str] = Field(default_factory=list)
    section_contract: str = ""


class DeliveryConfig(_DocModel):
    output_targets: list[str] = Field(default_factory=lambda: ["download"])
    default_output_targets: list[str] = Field(default_factory=lambda: ["download"])
    allow_multi_target: bool = True
    overrides_by_tenant: dict[str, list[str]] = Field(default_factory=dict)


class CountingStrategy(str, Enum):
    QUESTION_KEY_MAP = "questionKeyMap"
    SELECTION = "selection"
    READOUT_READY = "readoutReady"
    DYNAMIC_COUNT = "dynamicCount"


class FlowStepMeta(_DocModel):
    key: str = Field(min_length=1)
    label: str = Field(min_length=1)
    order: int = Field(ge=0)
    countable: bool = False
    total_questions: int = Field(default=0, ge=0)
    counting_strategy: Optional[CountingStrategy] = None


class FlowMeta(_DocModel):
    flow_title: str = ""
    flow_description: str = ""
    steps: list[FlowStepMeta] = Field(default_factory=list)


class ProgressRules(_DocModel):
    question_key_map: dict[str, int] = Field(default_factory=dict)
    dynamic_count_field: str = ""
    dynamic_count_step_key: str = ""
    selection_question_key: str = ""


class RoutingCondition(_DocModel):
    field: str = Field(min_length=1)
    operator: str = "eq"
    value: Any = None


class RoutingRule(_DocModel):
    """One arm of a declarative router: all conditions must hold to take `goto`."""
    when: list[RoutingCondition] = Field(default_factory=list)
    goto: Optional[str] = None
    default: Optional[str] = None

    @model_validator(mode="after")
    def _one_outcome(self):
        if self.goto is None and self.default is None:
            raise ValueError("routing rule needs 'goto' or 'default'")
        return self


class GraphConfig(_DocModel):
    steps: list[StepDef] = Field(default_factory=list)
    models: dict[str, ModelConfig] = Field(default_factory=dict)
    message_policy: dict[str, MessagePolicyEntry] = Field(default_factory=dict)
    ai_prompts: dict[str, str] = Field(default_factory=dict)
    strings: dict[str, str] = Field(default_factory=dict)
    question_templates: list[QuestionTemplate] = Field(default_factory=list)
    clarifier_retry_text: dict[str, str] = Field(default_factory=dict)
    clarification_acknowledgement: Union[str, list[str]] = Field(default_factory=list)
    readout_voice: ReadoutVoice = Field(default_factory=ReadoutVoice)
    readout: ReadoutConfig = Field(default_factory=ReadoutConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    meta: FlowMeta = Field(default_factory=FlowMeta)
    overlay_prefixes: dict[str, str] = Field(default_factory=dict)
    example_templates: dict[str, list[str]] = Field(default_factory=dict)
    progress_rules: ProgressRules = Field(default_factory=ProgressRules)
    options: dict[str, list[str]] = Field(default_factory=dict)
    routing_rules: dict[str, list[RoutingRule]] = Field(default_factory=dict)


# ──────────────────────────────────────────────────────────────
#  Graph topology
# ──────────────────────────────────────────────────────────────

class NodeKind(str, Enum):
    ROUTER = "router"
    QUESTION = "question"
    INGEST = "ingest"
    COMPUTE = "compute"
    INTEGRATION = "integration"
    TERMINAL = "terminal"


class GraphMeta(_DocModel):
    graph_id: str = Field(min_length=1)
    version: str = Field(min_length=1)
    entry_point: str = Field(
        min_length=1,
        validation_alias=AliasChoices("entryPoint", "entrypoint", "entry_point"),
    )
    description: Optional[str] = None
    tags: list[str] = Field(default_factory=list)

    @field_validator("version", mode="before")
    @classmethod
    def _version_as_text(cls, v):
        return str(v) if isinstance(v, (int, float)) else v


class NodeDefinition(_DocModel):
    id: str = Field(min_length=1)
    kind: NodeKind
    handler_ref: str = Field(min_length=1)
    helper_refs: list[str] = Field(default_factory=list)
    reads: list[str] = Field(default_factory=list)      # documentation only
    writes: list[str] = Field(default_factory=list)     # documentation only
    description: str = ""


class StaticTransition(_DocModel):
    source: str = Field(min_length=1, alias="from")
    target: Optional[str] = Field(default=None, min_length=1, alias="to")
    terminal: bool = False

    @model_validator(mode="after")
    def _exactly_one_destination(self):
        if self.terminal == (self.target is not None):
            raise ValueError("static transition needs exactly one of 'to' or 'terminal: true'")
        return self

    @property
    def destination(self) -> str:
        return TERMINAL if self.terminal else self.target


class ConditionalTransition(_DocModel):
    source: str = Field(min_length=1, alias="from")
    router_ref: str = Field(min_length=1)
    destinations: dict[str, str]


class Transitions(_DocModel):
    static: list[StaticTransition] = Field(default_factory=list)
    conditional: list[ConditionalTransition] = Field(default_factory=list)


class RuntimeConfigRefs(_DocModel):
    init_config_ref: Optional[str] = None
    model_aliases: dict[str, str] = Field(default_factory=dict)
    message_policy_ref: Optional[str] = None
    prompt_set_ref: Optional[str] = None
    delivery_policy_ref: Optional[str] = None
    example_generator_ref: Optional[str] = None
    overlay_prefix_ref: Optional[str] = None


class ValidationHints(_DocModel):
    required_state_fields: list[str] = Field(default_factory=list)
    invariants: list[str] = Field(default_factory=list)


class WorkflowDefinition(_DocModel):
    graph: GraphMeta
    state_contract_ref: str = Field(min_length=1)
    nodes: list[NodeDefinition] = Field(min_length=1)
    transitions: Transitions
    routing_keys: list[str] = Field(default_factory=list)
    runtime_config_refs: RuntimeConfigRefs = Field(default_factory=RuntimeConfigRefs)
    config: Optional[GraphConfig] = None
    validation: ValidationHints = Field(default_factory=ValidationHints)

    @model_validator(mode="after")
    def _unique_node_ids(self):
        seen: set[str] = set()
        dupes = []
        for node in self.nodes:
            if node.id in seen:
                dupes.append(node.id)
            seen.add(node.id)
        if dupes:
            raise ValueError(f"duplicate node ids: {', '.join(sorted(set(dupes)))}")
        return self

    @property
    def node_ids(self) -> list[str]:
        return [n.id for n in self.nodes]

    def node(self, node_id: str) -> Optional[NodeDefinition]:
        for n in self.nodes:
            if n.id == node_id:
                return n
        return None

    @property
    def first_question_key(self) -> Optional[str]:
        if self.config and self.config.question_templates:
            return self.config.question_templates[0].key
        return None


# ──────────────────────────────────────────────────────────────
#  Parsing
# ──────────────────────────────────────────────────────────────

def _format_errors(e: ValidationError) -> list[str]:
    problems = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "<document>"
        problems.append(f"{loc}: {err['msg']}")
    return problems


def parse(document: Union[Mapping[str, Any], str]) -> WorkflowDefinition:
    """
    Validate a workflow document and return the frozen definition.

    `document` may be an already-loaded mapping or YAML/JSON text.
    Raises StructuralError listing every problem found.
    """
    if isinstance(document, str):
        try:
            document = yaml.safe_load(document)
        except yaml.YAMLError as e:
            raise StructuralError(f"Workflow document is not valid YAML/JSON: {e}") from e

    if not isinstance(document, Mapping):
        raise StructuralError(
            f"Workflow document must be a mapping, got {type(document).__name__}")

    try:
        definition = WorkflowDefinition.model_validate(dict(document))
    except ValidationError as e:
        problems = _format_errors(e)
        logger.error("invalid_workflow_definition", errors=problems)
        raise StructuralError(
            f"Invalid workflow definition: {'; '.join(problems)}", problems) from e

    logger.debug("workflow_definition_parsed",
                 graph_id=definition.graph.graph_id,
                 nodes=len(definition.nodes))
    return definition


def load_definition(path: Union[str, Path]) -> WorkflowDefinition:
    """Read a .yaml/.yml/.json workflow file and parse it."""
    path = Path(path)
    text = path.read_text(encoding="utf-8")
    if path.suffix == ".json":
        try:
            return parse(json.loads(text))
        except json.JSONDecodeError as e:
            raise StructuralError(f"{path}: invalid JSON: {e}") from e
    return parse(text)
