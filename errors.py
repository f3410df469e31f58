"""Exception types shared by the audit service and its HTTP layer."""

from typing import List, Optional


class AuditServiceError(Exception):
    """Base class for errors surfaced to API clients."""

    status_code = 500
    error_type = "audit_error"

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class ValidationError(AuditServiceError):
    """The submitted URL batch was rejected. No job is created."""

    status_code = 400
    error_type = "validation_error"

    def __init__(
        self,
        message: str,
        errors: Optional[List[str]] = None,
        warnings: Optional[List[str]] = None,
    ):
        super().__init__(message, detail="; ".join(errors or []) or None)
        self.errors = errors or []
        self.warnings = warnings or []


class ConflictError(AuditServiceError):
    status_code = 409
    error_type = "conflict"


class NotFoundError(AuditServiceError):
    status_code = 404
    error_type = "not_found"


class ForbiddenError(AuditServiceError):
    status_code = 403
    error_type = "forbidden"


class PipelineFailure(AuditServiceError):
    """Aggregation or synthesis failed after all URLs settled."""

    error_type = "pipeline_failure"


class UnsafeUrlError(ValueError):
    """URL points at a loopback, private or otherwise blocked address."""


class CrawlError(Exception):
    """A page could not be fetched or parsed."""
