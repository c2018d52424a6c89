"""
Discovery workflow — the reference graph: use-case group selection, use-case
narrowing, a short discovery questionnaire, readout and wrap-up.

    graph = load_reference_graph()
    state = await run_turn(graph, create_initial_state("session-1"))
"""
from __future__ import annotations

from typing import Optional

from config.settings import get_settings
from flows.discovery.config import DEFINITION_PATH
from flows.discovery.register import register_all
from workflow.compiler import CompiledGraph, compile_graph
from workflow.registry import RegistryContext


def load_reference_graph(registry: Optional[RegistryContext] = None) -> CompiledGraph:
    """
    Register the discovery module (once) and compile its definition:
    settings.workflow.definition_path when set, else the bundled YAML.
    """
    registry = register_all(registry)
    path = get_settings().workflow.definition_path or DEFINITION_PATH
    return compile_graph(path, registry)
