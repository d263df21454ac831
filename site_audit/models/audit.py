"""Site audit SQLAlchemy models."""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, ForeignKey, Integer, String, Text, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from site_audit.database import Base, UTCDateTime, utcnow
from site_audit.options import AuditOptions, AuditStatus, empty_issues_summary


def _new_id() -> str:
    return uuid.uuid4().hex


class SiteAudit(Base):
    """One crawl-and-analyze run of a project's site."""

    __tablename__ = "site_audits"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    project_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=True, index=True
    )
    site_url: Mapped[str] = mapped_column(String(2048), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=AuditStatus.PENDING.value, nullable=False, index=True
    )
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    total_pages: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    pages_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    progress_percentage: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    options: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    page_results: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    issues_summary: Mapped[dict] = mapped_column(JSON, nullable=False, default=empty_issues_summary)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    html_report: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ai_insights: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    project: Mapped[Optional["Project"]] = relationship(back_populates="audits")  # noqa: F821
    history: Mapped[list["AuditHistory"]] = relationship(
        back_populates="audit", cascade="all, delete-orphan", passive_deletes=True
    )

    @property
    def audit_status(self) -> AuditStatus:
        return AuditStatus(self.status)

    @property
    def audit_options(self) -> AuditOptions:
        return AuditOptions.from_dict(self.options)

    def __repr__(self) -> str:
        return f"<SiteAudit id={self.id} url={self.site_url!r} status={self.status}>"


class AuditHistory(Base):
    """Snapshot written when an audit completes."""

    __tablename__ = "audit_history"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    project_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    audit_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("site_audits.id", ondelete="CASCADE"), nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    total_pages: Mapped[int] = mapped_column(Integer, nullable=False)
    issues_summary: Mapped[dict] = mapped_column(JSON, nullable=False)

    audit: Mapped["SiteAudit"] = relationship(back_populates="history")

    def __repr__(self) -> str:
        return f"<AuditHistory id={self.id} audit={self.audit_id}>"


class AuditSchedule(Base):
    """Recurring audit configuration for a project."""

    __tablename__ = "audit_schedules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    project_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    frequency: Mapped[str] = mapped_column(String(20), nullable=False, default="weekly")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_run_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    next_run_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    options: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    project: Mapped["Project"] = relationship(back_populates="schedules")  # noqa: F821

    def __repr__(self) -> str:
        return (
            f"<AuditSchedule id={self.id} project={self.project_id} "
            f"freq={self.frequency} next={self.next_run_at}>"
        )
