"""External progress view of an audit for polling clients."""

from dataclasses import dataclass
from typing import Any, Optional

from site_audit.models import SiteAudit
from site_audit.options import AuditOptions, AuditStatus

PENDING_PROGRESS = 5
MAX_ESTIMATED_PROGRESS = 95


@dataclass(frozen=True)
class AuditProgress:
    audit_id: str
    status: AuditStatus
    progress: int
    pages_discovered: int
    pages_processed: int
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "auditId": self.audit_id,
            "status": self.status.value.lower(),
            "progress": self.progress,
            "pagesDiscovered": self.pages_discovered,
            "pagesProcessed": self.pages_processed,
        }
        if self.error:
            data["error"] = self.error
        return data


def _max_pages(options: Optional[dict]) -> int:
    value = (options or {}).get("max_pages") or (options or {}).get("maxPages")
    if isinstance(value, int) and not isinstance(value, bool) and value > 0:
        return value
    return AuditOptions.max_pages


def estimate_progress(status: AuditStatus, percentage: Optional[int], total_pages: int, max_pages: int) -> int:
    """Map an audit's status and counters onto 0-100.

    Audits that are running but have no stored percentage yet are
    estimated from pages discovered, never reaching 100 before the
    terminal transition.
    """
    if status is AuditStatus.PENDING:
        return PENDING_PROGRESS
    if status is AuditStatus.COMPLETED:
        return 100
    if status is AuditStatus.FAILED:
        return 0
    if percentage is not None:
        return max(0, min(int(percentage), 100))
    return min(int(total_pages * 100 // max_pages), MAX_ESTIMATED_PROGRESS)


def build_progress(audit: SiteAudit) -> AuditProgress:
    """Pure mapping from a stored audit to its progress payload."""
    status = AuditStatus(audit.status)
    total_pages = audit.total_pages or 0
    return AuditProgress(
        audit_id=audit.id,
        status=status,
        progress=estimate_progress(status, audit.progress_percentage, total_pages, _max_pages(audit.options)),
        pages_discovered=total_pages,
        pages_processed=audit.pages_processed or 0,
        error=audit.error_message if status is AuditStatus.FAILED else None,
    )
