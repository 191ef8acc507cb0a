"""Error types raised by the engine. Every error carries a stable ``code``."""

from __future__ import annotations

from typing import Any


class MissionControlError(Exception):
    """Base error for engine failures."""

    code = "MISSION_CONTROL_ERROR"

    def __init__(self, message: str, *, code: str | None = None, **details: Any):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "error": self.message, **self.details}


class ValidationError(MissionControlError):
    code = "VALIDATION_ERROR"


class NotFoundError(MissionControlError):
    """Unknown entity id. The code is derived from the entity name."""

    def __init__(self, entity: str, entity_id: str):
        super().__init__(
            f"{entity.capitalize()} not found: {entity_id}",
            code=f"{entity.upper()}_NOT_FOUND",
            entity_id=entity_id,
        )


class DependencyNotFoundError(MissionControlError):
    code = "DEPENDENCY_NOT_FOUND"


class GraphIntegrityError(MissionControlError):
    code = "CYCLE_DETECTED"


class ArtifactError(MissionControlError):
    code = "INVALID_ARTIFACT_TYPE"


class RateLimitedError(MissionControlError):
    code = "RATE_LIMITED"


class AgentExecutionError(MissionControlError):
    code = "AGENT_EXECUTION_FAILED"
