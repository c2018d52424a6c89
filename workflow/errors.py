"""
Error taxonomy for workflow parsing, compilation and turn execution.

  StructuralError          malformed definition, raised by parse()
  UnresolvedReferenceError missing registry key, raised by compile_graph()
  UnsupportedContractError unknown stateContractRef, raised by compile_graph()
  ContractViolation        state failed re-validation during/after a turn
  CollaboratorFailure      AI / retrieval / review call failed; always caught
                           by the primitive or handler that made the call
  WalkLimitExceeded        a single turn visited too many nodes
"""
from __future__ import annotations

from typing import Any, Optional


class WorkflowError(Exception):
    """Base class for every error raised by the workflow engine."""


class StructuralError(WorkflowError, ValueError):
    def __init__(self, message: str, problems: Optional[list[str]] = None):
        self.problems = problems or [message]
        super().__init__(message)


class UnresolvedReferenceError(WorkflowError, LookupError):
    def __init__(self, kind: str, key: str, context: str = ""):
        self.kind = kind
        self.key = key
        self.context = context
        where = f" (referenced by {context})" if context else ""
        super().__init__(f"No {kind} registered under '{key}'{where}")


class UnsupportedContractError(WorkflowError):
    def __init__(self, contract_ref: str, supported: list[str]):
        self.contract_ref = contract_ref
        self.supported = supported
        super().__init__(
            f"Unsupported state contract '{contract_ref}'; "
            f"expected one of {', '.join(supported)}"
        )


class ContractViolation(WorkflowError):
    """Conversation state no longer matches its structural contract."""

    def __init__(self, message: str, errors: Optional[list[dict[str, Any]]] = None):
        self.errors = errors or []
        super().__init__(message)


class CollaboratorFailure(WorkflowError):
    def __init__(self, collaborator: str, message: str):
        self.collaborator = collaborator
        super().__init__(f"{collaborator}: {message}")


class WalkLimitExceeded(WorkflowError):
    def __init__(self, limit: int, path: list[str]):
        self.limit = limit
        self.path = path
        super().__init__(
            f"Turn exceeded {limit} node visits; last nodes: {' -> '.join(path[-5:])}"
        )
