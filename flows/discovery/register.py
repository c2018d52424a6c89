"""
Registers every discovery handler, router and config function.

register_all() is safe to call repeatedly: the module claims its key in the
registry the first time and returns early afterwards.
"""
from __future__ import annotations

from typing import Optional

import structlog

from flows.discovery import config, handlers, routers
from workflow.registry import RegistryContext, RegistryKind, default_registry

logger = structlog.get_logger()

MODULE_KEY = "flows.discovery"

HANDLERS = {
    "discovery.route_turn": handlers.noop,
    "discovery.ask_use_case_group": handlers.ask_use_case_group,
    "discovery.ingest_use_case_group": handlers.ingest_use_case_group,
    "discovery.resolve_use_cases": handlers.resolve_use_cases,
    "discovery.ask_use_case_select": handlers.ask_use_case_select,
    "discovery.ingest_use_case_select": handlers.ingest_use_case_select,
    "discovery.select_discovery_focus": handlers.select_discovery_focus,
    "discovery.discovery_loop": handlers.discovery_loop,
    "discovery.build_readout": handlers.build_readout,
    "discovery.wrap_up": handlers.wrap_up,
}

ROUTERS = {
    "discovery.dispatch": routers.dispatch,
    "discovery.discovery_loop": routers.discovery_loop,
}

CONFIG_FNS = {
    "discovery.example_generator": config.example_generator,
    "discovery.overlay_prefix": config.overlay_prefix,
}


def register_all(registry: Optional[RegistryContext] = None) -> RegistryContext:
    registry = registry or default_registry()
    if not registry.claim_module(MODULE_KEY):
        return registry

    for key, fn in HANDLERS.items():
        registry.register(RegistryKind.HANDLER, key, fn)
    for key, fn in ROUTERS.items():
        registry.register(RegistryKind.ROUTER, key, fn)
    for key, fn in CONFIG_FNS.items():
        registry.register(RegistryKind.CONFIG_FN, key, fn)
    registry.register(RegistryKind.CONFIG_PROVIDER, "discovery.init_config", config.init_config)

    logger.info("workflow_module_registered", module=MODULE_KEY, entries=registry.count())
    return registry
