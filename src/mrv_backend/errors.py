"""
Error kinds surfaced by the pipeline core.

Every error carries a stable ``kind`` string plus structured ``detail`` (affected
ids, missing stage names, field-level messages) so a client can drive corrective
action without re-deriving state. The HTTP layer maps kinds to status codes.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional


class PipelineError(Exception):
    """Base class for all errors raised by the pipeline core."""

    kind = "PipelineError"

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail: Dict[str, Any] = detail or {}

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.kind, "message": self.message, "detail": self.detail}


class NotFoundError(PipelineError):
    kind = "NotFound"

    def __init__(self, entity: str, identifier: Any) -> None:
        super().__init__(f"{entity} {identifier!r} not found", {"entity": entity, "id": identifier})


class PreconditionNotMetError(PipelineError):
    kind = "PreconditionNotMet"

    def __init__(self, stage: str, missing_stages: Iterable[str]) -> None:
        self.stage = stage
        self.missing_stages: List[str] = list(missing_stages)
        super().__init__(
            f"Stage '{stage}' requires {', '.join(self.missing_stages)} to complete first",
            {"stage": stage, "missing_stages": self.missing_stages},
        )


class ValidationError(PipelineError):
    """Malformed input; ``errors`` is a list of ``{"field": ..., "message": ...}``."""

    kind = "ValidationError"

    def __init__(self, message: str, errors: Optional[List[Dict[str, str]]] = None) -> None:
        self.errors: List[Dict[str, str]] = errors or []
        super().__init__(message, {"errors": self.errors})

    @classmethod
    def from_pydantic(cls, exc: Any, message: str = "Invalid input") -> "ValidationError":
        errors = [
            {"field": ".".join(str(part) for part in err.get("loc", ())) or "__root__", "message": err.get("msg", "")}
            for err in exc.errors()
        ]
        return cls(message, errors)


class PartialFailureError(PipelineError):
    kind = "PartialFailure"

    def __init__(self, updated: int, failed: List[Dict[str, Any]]) -> None:
        self.updated = updated
        self.failed = failed
        super().__init__(
            f"{len(failed)} item(s) failed, {updated} applied",
            {"updated": updated, "failed": failed},
        )


class ConflictError(PipelineError):
    kind = "Conflict"


class StageFailedError(PipelineError):
    """A synchronous stage raised an unexpected error; the stage is recorded as failed."""

    kind = "StageFailed"


class ComputationFailedError(PipelineError):
    """Terminal failure of an async job. Reported inside job status, never raised to the submitter."""

    kind = "ComputationFailed"

    @classmethod
    def for_job(cls, job: Any) -> "ComputationFailedError":
        reason = job.failure_reason.value if job.failure_reason else "Unknown"
        return cls(
            f"Job {job.id} failed ({reason}): {job.error}",
            {"job_id": job.id, "stage": job.stage.value, "reason": reason},
        )


# Raised by compute functions inside async stages.


class TransientComputeError(Exception):
    """A retryable failure such as an external model service timeout."""


class InvalidInputError(Exception):
    """The records or params cannot be computed; resubmit with corrected input."""


class ModelUnavailableError(Exception):
    """A referenced model is unknown or cannot be loaded."""
