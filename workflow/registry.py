"""
Handler Registry — string-keyed catalog of the functions a workflow
definition refers to.

Four kinds of entries:
  handler          node handler: (state) -> patch, sync or async
  router           conditional edge function: (state) -> routing key
  config_provider  zero-arg legacy initializer returning behavior config
  config_fn        dynamic config helper (example generator, prefix mapper)

Registration happens during process init, before compile_graph(). A
RegistryContext can be passed explicitly to the compiler; the module-level
functions below operate on a shared default instance for call-site
convenience.
"""
from __future__ import annotations

import threading
from enum import Enum
from typing import Any, Callable, Optional

import structlog

from workflow.errors import UnresolvedReferenceError

logger = structlog.get_logger()


class RegistryKind(str, Enum):
    HANDLER = "handler"
    ROUTER = "router"
    CONFIG_PROVIDER = "config_provider"
    CONFIG_FN = "config_fn"


class RegistryContext:
    """
    Holds (kind, key) -> function bindings.
    Entries are never replaced once registered; only reset() clears them.
    """

    def __init__(self):
        self._entries: dict[RegistryKind, dict[str, Callable[..., Any]]] = {
            kind: {} for kind in RegistryKind
        }
        self._registered_modules: set[str] = set()
        self._lock = threading.Lock()

    # ── Registration ──────────────────────────────────

    def register(self, kind: RegistryKind | str, key: str, fn: Callable[..., Any]):
        """Bind fn under (kind, key). Registering the same fn again is a no-op."""
        kind = RegistryKind(kind)
        if not key:
            raise ValueError(f"Cannot register {kind.value} with an empty key")
        if not callable(fn):
            raise TypeError(f"{kind.value} '{key}' must be callable, got {type(fn).__name__}")

        with self._lock:
            existing = self._entries[kind].get(key)
            if existing is fn:
                return
            if existing is not None:
                raise ValueError(f"{kind.value} '{key}' is already registered to a different function")
            self._entries[kind][key] = fn

        logger.debug("registry_entry_added", kind=kind.value, key=key)

    def claim_module(self, module_key: str) -> bool:
        """
        Mark a registration module as loaded. Returns False when it already
        ran, so a module's register_all() can bail out early.
        """
        with self._lock:
            if module_key in self._registered_modules:
                return False
            self._registered_modules.add(module_key)
            return True

    # ── Lookup ────────────────────────────────────────

    def resolve(self, kind: RegistryKind | str, key: str, context: str = "") -> Callable[..., Any]:
        kind = RegistryKind(kind)
        fn = self._entries[kind].get(key)
        if fn is None:
            raise UnresolvedReferenceError(kind.value, key, context)
        return fn

    def get(self, kind: RegistryKind | str, key: str) -> Optional[Callable[..., Any]]:
        return self._entries[RegistryKind(kind)].get(key)

    def list(self, kind: RegistryKind | str) -> list[str]:
        return sorted(self._entries[RegistryKind(kind)])

    def count(self) -> int:
        return sum(len(v) for v in self._entries.values())

    # ── Test support ──────────────────────────────────

    def reset(self):
        """Drop every entry and module claim."""
        with self._lock:
            for entries in self._entries.values():
                entries.clear()
            self._registered_modules.clear()


# ──────────────────────────────────────────────────────────────
#  Default instance
# ──────────────────────────────────────────────────────────────

_default_registry = RegistryContext()


def default_registry() -> RegistryContext:
    return _default_registry


def register_handler(key: str, fn: Callable[..., Any]):
    _default_registry.register(RegistryKind.HANDLER, key, fn)


def register_router(key: str, fn: Callable[..., Any]):
    _default_registry.register(RegistryKind.ROUTER, key, fn)


def register_config_provider(key: str, fn: Callable[..., Any]):
    _default_registry.register(RegistryKind.CONFIG_PROVIDER, key, fn)


def register_config_fn(key: str, fn: Callable[..., Any]):
    _default_registry.register(RegistryKind.CONFIG_FN, key, fn)


def resolve(kind: RegistryKind | str, key: str) -> Callable[..., Any]:
    return _default_registry.resolve(kind, key)


def list_keys(kind: RegistryKind | str) -> list[str]:
    return _default_registry.list(kind)


def reset_registry():
    _default_registry.reset()


def registration_guard(module_key: str, registry: Optional[RegistryContext] = None) -> bool:
    """True the first time module_key registers against the registry."""
    return (registry or _default_registry).claim_module(module_key)
