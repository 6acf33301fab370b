"""Error taxonomy for audit pipeline orchestration."""

from __future__ import annotations

from typing import Any, Dict, Optional


class PipelineError(Exception):
    """Request-time error returned synchronously to the trigger caller."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class UnitNotFoundError(PipelineError):
    status_code = 404


class ForbiddenError(PipelineError):
    status_code = 403


class AlreadyRunningError(PipelineError):
    status_code = 400


class NotRunningError(PipelineError):
    status_code = 400


class QueueUnavailableError(PipelineError):
    """Raised when the Redis broker cannot be reached within the connection policy."""

    status_code = 503


class StageFailure(Exception):
    """Raised by stage collaborators to report a classified failure."""

    retryable = False


class TransientStageFailure(StageFailure):
    """Network, timeout or rate-limit failure worth retrying."""

    retryable = True


class FatalStageFailure(StageFailure):
    """Permanent failure such as an invalid target or a hard rejection."""
