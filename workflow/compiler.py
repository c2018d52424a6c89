"""
Graph Compiler — turns a parsed WorkflowDefinition into an executable graph.

Preflight runs in a fixed order and stops at the first problem:
  1. state contract is one the runtime understands
  2. entry point is a declared node
  3. every node's handlerRef resolves
  4. every conditional transition's routerRef resolves, destinations exist
  5. every static transition's endpoints exist
  6. behavior configuration: inline config, else the initConfigRef provider

Nothing is built until preflight has passed, so a failed compile never
leaves a half-wired graph behind. The result is immutable and shared by
every turn of every session.
"""
from __future__ import annotations

import dataclasses
import inspect
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Union

import structlog
from pydantic import ValidationError

from models.state import SUPPORTED_CONTRACTS
from workflow.behavior import BehaviorConfig
from workflow.definition import (
    TERMINAL, GraphConfig, NodeKind, WorkflowDefinition, load_definition, parse,
)
from workflow.errors import StructuralError, UnsupportedContractError
from workflow.registry import RegistryContext, RegistryKind, default_registry
from workflow.routing import rules_router

logger = structlog.get_logger()

DefinitionSource = Union[WorkflowDefinition, Mapping[str, Any], str, Path]


@dataclass(frozen=True)
class CompiledNode:
    id: str
    kind: NodeKind
    handler_ref: str
    handler: Callable[..., Any]
    is_async: bool


@dataclass(frozen=True)
class CompiledRouter:
    source: str
    router_ref: str
    router: Callable[..., Any]
    destinations: dict[str, str]


@dataclass(frozen=True)
class CompiledGraph:
    graph_id: str
    version: str
    entry_point: str
    nodes: dict[str, CompiledNode]
    static_edges: dict[str, str]
    conditional_edges: dict[str, CompiledRouter]
    behavior: BehaviorConfig
    definition: WorkflowDefinition = field(repr=False)

    @property
    def node_ids(self) -> set[str]:
        return set(self.nodes)

    def has_outgoing(self, node_id: str) -> bool:
        return node_id in self.conditional_edges or node_id in self.static_edges


# ──────────────────────────────────────────────────────────────
#  Entry point
# ──────────────────────────────────────────────────────────────

def _load(source: DefinitionSource) -> WorkflowDefinition:
    if isinstance(source, WorkflowDefinition):
        return source
    if isinstance(source, Path):
        return load_definition(source)
    if isinstance(source, str) and "\n" not in source and source.endswith((".yaml", ".yml", ".json")):
        return load_definition(source)
    return parse(source)


def compile_graph(
    source: DefinitionSource,
    registry: Optional[RegistryContext] = None,
) -> CompiledGraph:
    """
    Compile a workflow definition (object, mapping, YAML text or file path)
    against the registry. Raises StructuralError, UnsupportedContractError or
    UnresolvedReferenceError; never returns a partial graph.
    """
    registry = registry or default_registry()
    definition = _load(source)
    graph_id = definition.graph.graph_id

    _check_contract(definition)
    declared = set(definition.node_ids)
    _check_entry_point(definition, declared)
    handlers = _resolve_handlers(definition, registry)
    routers = _resolve_routers(definition, registry, declared)
    static_edges = _resolve_static_edges(definition, declared, routers)
    behavior = _build_behavior(definition, registry)

    nodes = {
        node.id: CompiledNode(
            id=node.id,
            kind=node.kind,
            handler_ref=node.handler_ref,
            handler=handlers[node.id],
            is_async=inspect.iscoroutinefunction(handlers[node.id]),
        )
        for node in definition.nodes
    }

    graph = CompiledGraph(
        graph_id=graph_id,
        version=definition.graph.version,
        entry_point=definition.graph.entry_point,
        nodes=nodes,
        static_edges=static_edges,
        conditional_edges=routers,
        behavior=behavior,
        definition=definition,
    )
    logger.info("graph_compiled",
                graph_id=graph_id,
                version=graph.version,
                nodes=len(nodes),
                static_edges=len(static_edges),
                conditional_edges=len(routers),
                config_source=behavior.source)
    return graph


# ──────────────────────────────────────────────────────────────
#  Preflight steps
# ──────────────────────────────────────────────────────────────

def _check_contract(definition: WorkflowDefinition):
    ref = definition.state_contract_ref
    if ref not in SUPPORTED_CONTRACTS:
        logger.error("unsupported_state_contract",
                     graph_id=definition.graph.graph_id, contract=ref)
        raise UnsupportedContractError(ref, SUPPORTED_CONTRACTS)


def _check_entry_point(definition: WorkflowDefinition, declared: set[str]):
    entry = definition.graph.entry_point
    if entry not in declared:
        raise StructuralError(
            f"Entry point '{entry}' is not a declared node in graph "
            f"'{definition.graph.graph_id}'")


def _resolve_handlers(definition: WorkflowDefinition, registry: RegistryContext) -> dict[str, Callable]:
    handlers = {}
    for node in definition.nodes:
        handlers[node.id] = registry.resolve(
            RegistryKind.HANDLER, node.handler_ref, context=f"node '{node.id}'")
    return handlers


def _check_destination(destination: str, declared: set[str], where: str):
    if destination != TERMINAL and destination not in declared:
        raise StructuralError(
            f"{where} points to '{destination}', which is neither a declared node nor {TERMINAL}")


def _resolve_routers(
    definition: WorkflowDefinition,
    registry: RegistryContext,
    declared: set[str],
) -> dict[str, CompiledRouter]:
    rule_sets = definition.config.routing_rules if definition.config else {}
    routers: dict[str, CompiledRouter] = {}

    for ct in definition.transitions.conditional:
        where = f"conditional transition from '{ct.source}' ({ct.router_ref})"
        router = registry.get(RegistryKind.ROUTER, ct.router_ref)
        if router is None and ct.router_ref in rule_sets:
            router = rules_router(rule_sets[ct.router_ref])
        if router is None:
            router = registry.resolve(RegistryKind.ROUTER, ct.router_ref, context=where)

        if ct.source not in declared:
            raise StructuralError(f"{where} starts at undeclared node '{ct.source}'")
        if ct.source in routers:
            raise StructuralError(f"Node '{ct.source}' has more than one conditional transition")
        for key, destination in ct.destinations.items():
            _check_destination(destination, declared, f"{where} key '{key}'")

        routers[ct.source] = CompiledRouter(
            source=ct.source,
            router_ref=ct.router_ref,
            router=router,
            destinations=dict(ct.destinations),
        )
    return routers


def _resolve_static_edges(
    definition: WorkflowDefinition,
    declared: set[str],
    routers: dict[str, CompiledRouter],
) -> dict[str, str]:
    edges: dict[str, str] = {}
    for st in definition.transitions.static:
        where = f"static transition '{st.source}' -> '{st.destination}'"
        if st.source not in declared:
            raise StructuralError(f"{where} starts at undeclared node '{st.source}'")
        _check_destination(st.destination, declared, where)

        if st.source in routers:
            logger.warning("static_edge_shadowed_by_router",
                           graph_id=definition.graph.graph_id, node=st.source)
            continue
        if st.source in edges:
            logger.warning("duplicate_static_edge_ignored",
                           graph_id=definition.graph.graph_id,
                           node=st.source, kept=edges[st.source], ignored=st.destination)
            continue
        edges[st.source] = st.destination
    return edges


def _has_inline_config(definition: WorkflowDefinition) -> bool:
    return definition.config is not None and bool(definition.config.model_fields_set)


def _build_behavior(definition: WorkflowDefinition, registry: RegistryContext) -> BehaviorConfig:
    refs = definition.runtime_config_refs
    extra: dict[str, Any] = {"model_aliases": dict(refs.model_aliases)}
    if refs.example_generator_ref:
        extra["example_generator"] = registry.resolve(
            RegistryKind.CONFIG_FN, refs.example_generator_ref,
            context="runtimeConfigRefs.exampleGeneratorRef")
    if refs.overlay_prefix_ref:
        extra["overlay_prefix"] = registry.resolve(
            RegistryKind.CONFIG_FN, refs.overlay_prefix_ref,
            context="runtimeConfigRefs.overlayPrefixRef")

    provider = None
    if refs.init_config_ref:
        provider = registry.resolve(
            RegistryKind.CONFIG_PROVIDER, refs.init_config_ref,
            context="runtimeConfigRefs.initConfigRef")

    if _has_inline_config(definition):
        return BehaviorConfig.from_graph_config(definition.config, source="inline", **extra)

    if provider is not None:
        produced = provider()
        if isinstance(produced, BehaviorConfig):
            extra["model_aliases"] = {**produced.model_aliases, **extra["model_aliases"]}
            return dataclasses.replace(produced, source="provider", **extra)
        if isinstance(produced, GraphConfig):
            return BehaviorConfig.from_graph_config(produced, source="provider", **extra)
        if isinstance(produced, Mapping):
            try:
                config = GraphConfig.model_validate(dict(produced))
            except ValidationError as e:
                raise StructuralError(
                    f"Config provider '{refs.init_config_ref}' returned invalid config: {e}") from e
            return BehaviorConfig.from_graph_config(config, source="provider", **extra)
        raise StructuralError(
            f"Config provider '{refs.init_config_ref}' returned {type(produced).__name__}, "
            f"expected a mapping or BehaviorConfig")

    return BehaviorConfig(source="default", **extra)
