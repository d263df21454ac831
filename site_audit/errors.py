"""Exception hierarchy for the audit pipeline."""

from typing import Optional


class AuditPipelineError(Exception):
    """Base class for every error raised by the pipeline."""


class NotFound(AuditPipelineError):
    """A referenced audit, schedule or project does not exist."""

    def __init__(self, kind: str, ident: str) -> None:
        super().__init__(f"{kind} not found: {ident}")
        self.kind = kind
        self.ident = ident


class InvalidState(AuditPipelineError):
    """The operation is not permitted in the record's current status."""


class InvalidOptions(AuditPipelineError, ValueError):
    """Audit options or update fields failed validation."""


class QueueUnavailable(AuditPipelineError):
    """A job could not be handed to the queue."""

    def __init__(self, message: str, audit_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.audit_id = audit_id


class CrawlFailure(AuditPipelineError):
    """The crawler raised or timed out while auditing a site."""


class AuditAborted(AuditPipelineError):
    """A running audit was deleted or cancelled underneath its worker."""
