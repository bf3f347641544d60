"""
experiment_sdk.tier0_core.errors
─────────────────────────────────
Error taxonomy for the experiment engine. Every error carries a stable
machine-readable code, a caller-safe message, and an HTTP status hint for
whichever API layer wraps the engine.

None of these are retried internally. Store I/O failures are never wrapped
here; they propagate exactly as the backend raised them.
"""
from __future__ import annotations

from typing import Any


# ── Base error ────────────────────────────────────────────────────────────────

class ExperimentError(Exception):
    """
    Base class for all engine errors. Every error has:
    - code: stable machine-readable string (snake_case)
    - user_message: safe to surface to callers
    - detail: internal context, defaults to user_message
    - status_code: HTTP status hint for API layers
    """

    status_code: int = 500
    code: str = "internal_error"

    def __init__(
        self,
        code: str | None = None,
        user_message: str = "An unexpected error occurred.",
        detail: str | None = None,
        **metadata: Any,
    ) -> None:
        self.code = code or self.__class__.code
        self.user_message = user_message
        self.detail = detail or user_message
        self.metadata = metadata
        super().__init__(self.detail)

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": self.user_message,
            }
        }


# ── Generic typed errors ──────────────────────────────────────────────────────

class ValidationError(ExperimentError):
    """Input validation failure."""
    status_code = 422
    code = "validation_error"

    def __init__(
        self,
        code: str | None = None,
        user_message: str = "Validation failed.",
        fields: dict | None = None,
        **metadata: Any,
    ) -> None:
        self.fields = fields or {}
        super().__init__(code, user_message, **metadata)

    def to_dict(self) -> dict:
        d = super().to_dict()
        if self.fields:
            d["error"]["fields"] = self.fields
        return d


class NotFoundError(ExperimentError):
    status_code = 404
    code = "not_found"


class ForbiddenError(ExperimentError):
    status_code = 403
    code = "forbidden"


class ConflictError(ExperimentError):
    """Resource is in a state that does not allow the operation."""
    status_code = 409
    code = "conflict"


class ConfigurationError(ExperimentError):
    """Misconfiguration detected at startup."""
    status_code = 500
    code = "configuration_error"


# ── Domain errors ─────────────────────────────────────────────────────────────

class ExperimentNotFound(NotFoundError):
    code = "experiment_not_found"

    def __init__(self, experiment_id: str, **metadata: Any) -> None:
        self.experiment_id = experiment_id
        super().__init__(
            user_message=f"Experiment {experiment_id} not found",
            experiment_id=experiment_id,
            **metadata,
        )


class ExperimentNotActive(ConflictError):
    code = "experiment_not_active"

    def __init__(self, experiment_id: str, status: str, **metadata: Any) -> None:
        self.experiment_id = experiment_id
        self.status = status
        super().__init__(
            user_message=f"Experiment {experiment_id} is not active",
            detail=f"Experiment {experiment_id} is not active (status={status})",
            experiment_id=experiment_id,
            status=status,
            **metadata,
        )


class TargetingRejected(ForbiddenError):
    code = "targeting_rejected"

    def __init__(self, experiment_id: str, user_id: str, **metadata: Any) -> None:
        self.experiment_id = experiment_id
        self.user_id = user_id
        super().__init__(
            user_message="User does not meet targeting criteria",
            experiment_id=experiment_id,
            user_id=user_id,
            **metadata,
        )


class NotAssigned(NotFoundError):
    code = "not_assigned"

    def __init__(self, experiment_id: str, user_id: str, **metadata: Any) -> None:
        self.experiment_id = experiment_id
        self.user_id = user_id
        super().__init__(
            user_message="User not assigned to experiment",
            detail=f"User {user_id} not assigned to experiment {experiment_id}",
            experiment_id=experiment_id,
            user_id=user_id,
            **metadata,
        )


class InvalidExperimentDefinition(ValidationError):
    """Raised at creation time so a bad definition never reaches live traffic."""
    code = "invalid_experiment_definition"

    def __init__(
        self,
        user_message: str = "Invalid experiment definition.",
        fields: dict | None = None,
        **metadata: Any,
    ) -> None:
        super().__init__(user_message=user_message, fields=fields, **metadata)


__all__ = [
    "ExperimentError", "ValidationError", "NotFoundError", "ForbiddenError",
    "ConflictError", "ConfigurationError",
    "ExperimentNotFound", "ExperimentNotActive", "TargetingRejected",
    "NotAssigned", "InvalidExperimentDefinition",
]
