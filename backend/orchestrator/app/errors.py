"""Domain exceptions raised by orchestrator services."""
from __future__ import annotations

from typing import Optional


class OrchestratorError(Exception):
    """Base class for orchestrator failures surfaced to callers."""


class ValidationFailed(OrchestratorError, ValueError):
    """Raised when a request or state transition is not allowed."""


class NotFound(OrchestratorError, LookupError):
    """Raised when an entity is unknown or not visible to the caller."""

    def __init__(self, entity: str, entity_id: Optional[str] = None) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found")


class InternalFailure(OrchestratorError, RuntimeError):
    """Raised when an unexpected error is translated into a generic failure."""


class UnroutableRunType(TypeError):
    """Raised when a run type has no execution queue."""


__all__ = [
    "InternalFailure",
    "NotFound",
    "OrchestratorError",
    "UnroutableRunType",
    "ValidationFailed",
]
