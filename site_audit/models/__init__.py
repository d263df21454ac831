"""SQLAlchemy ORM models; importing this package populates Base.metadata."""

from site_audit.models.project import Project
from site_audit.models.audit import (
    SiteAudit,
    AuditHistory,
    AuditSchedule,
)

__all__ = [
    "Project",
    "SiteAudit",
    "AuditHistory",
    "AuditSchedule",
]
