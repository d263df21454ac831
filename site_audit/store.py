"""Audit record store: every read and write of audit and schedule rows.

The store is the single source of truth shared by the lifecycle manager,
the scheduler and the queue worker.  Each public method runs in its own
short transaction and returns detached ORM objects (the session factory
is created with ``expire_on_commit=False``).
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Generator, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from site_audit.database import get_session_factory, utcnow
from site_audit.errors import NotFound
from site_audit.models import AuditHistory, AuditSchedule, Project, SiteAudit
from site_audit.options import AuditOptions, AuditStatus, IssuesSummary, empty_issues_summary

logger = logging.getLogger(__name__)


class AuditStore:
    """SQLAlchemy-backed repository for projects, audits and schedules."""

    def __init__(self, session_factory: Optional[sessionmaker] = None) -> None:
        self._factory = session_factory

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        factory = self._factory or get_session_factory()
        session = factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def create_project(self, name: str, url: str, project_id: Optional[str] = None) -> Project:
        with self.session() as session:
            project = Project(name=name, url=url)
            if project_id:
                project.id = project_id
            session.add(project)
            session.flush()
            logger.info("Project created: %s (%s)", project.id, url)
            return project

    def get_project(self, project_id: str) -> Optional[Project]:
        with self.session() as session:
            return session.get(Project, project_id)

    def update_project_url(self, project_id: str, url: str) -> Project:
        with self.session() as session:
            project = session.get(Project, project_id)
            if project is None:
                raise NotFound("Project", project_id)
            project.url = url
            return project

    # ------------------------------------------------------------------
    # Audits
    # ------------------------------------------------------------------

    def create_audit(
        self,
        project_id: Optional[str],
        site_url: str,
        options: AuditOptions,
    ) -> SiteAudit:
        """Insert a PENDING audit with zeroed counters."""
        with self.session() as session:
            audit = SiteAudit(
                project_id=project_id,
                site_url=site_url,
                status=AuditStatus.PENDING.value,
                started_at=utcnow(),
                total_pages=0,
                pages_processed=0,
                options=options.to_dict(),
                issues_summary=empty_issues_summary(),
            )
            session.add(audit)
            session.flush()
            logger.info("Audit created: %s for %s", audit.id, site_url)
            return audit

    def get_audit(self, audit_id: str) -> Optional[SiteAudit]:
        with self.session() as session:
            return session.get(SiteAudit, audit_id)

    def require_audit(self, audit_id: str) -> SiteAudit:
        audit = self.get_audit(audit_id)
        if audit is None:
            raise NotFound("Audit", audit_id)
        return audit

    def list_audits(
        self,
        project_id: Optional[str] = None,
        status: Optional[AuditStatus] = None,
    ) -> list[SiteAudit]:
        with self.session() as session:
            stmt = select(SiteAudit).order_by(SiteAudit.started_at.desc())
            if project_id is not None:
                stmt = stmt.where(SiteAudit.project_id == project_id)
            if status is not None:
                stmt = stmt.where(SiteAudit.status == AuditStatus(status).value)
            return list(session.scalars(stmt))

    def modify_audit(self, audit_id: str, mutate: Callable[[SiteAudit], Any]) -> SiteAudit:
        """Apply *mutate* to the audit inside one transaction.

        If *mutate* raises, the transaction is rolled back and the stored
        record is left unchanged.
        """
        with self.session() as session:
            audit = session.get(SiteAudit, audit_id)
            if audit is None:
                raise NotFound("Audit", audit_id)
            mutate(audit)
            return audit

    def delete_audit(self, audit_id: str) -> None:
        """Delete the audit and its history rows."""
        with self.session() as session:
            audit = session.get(SiteAudit, audit_id)
            if audit is None:
                raise NotFound("Audit", audit_id)
            session.execute(delete(AuditHistory).where(AuditHistory.audit_id == audit_id))
            session.delete(audit)
        logger.info("Audit deleted: %s", audit_id)

    def mark_in_progress(self, audit_id: str, percentage: int) -> Optional[SiteAudit]:
        """Move a PENDING audit to IN_PROGRESS.

        Completed or failed rows are returned unchanged, so a cancellation
        is never undone.  Returns None if the row is gone.
        """
        with self.session() as session:
            audit = session.get(SiteAudit, audit_id)
            if audit is None:
                return None
            if AuditStatus(audit.status).is_terminal:
                return audit
            audit.status = AuditStatus.IN_PROGRESS.value
            audit.completed_at = None
            audit.error_message = None
            audit.progress_percentage = max(audit.progress_percentage or 0, percentage)
            return audit

    def record_progress(
        self,
        audit_id: str,
        percentage: Optional[int] = None,
        pages_discovered: Optional[int] = None,
        pages_processed: Optional[int] = None,
    ) -> Optional[SiteAudit]:
        """Write progress counters for an IN_PROGRESS audit.

        Values never move backwards, so repeating a write on retry is safe.
        Returns the current row (unchanged unless IN_PROGRESS), or None
        when it no longer exists.
        """
        with self.session() as session:
            audit = session.get(SiteAudit, audit_id)
            if audit is None:
                return None
            if audit.status != AuditStatus.IN_PROGRESS.value:
                return audit
            if percentage is not None:
                audit.progress_percentage = max(audit.progress_percentage or 0, min(int(percentage), 100))
            if pages_discovered is not None:
                audit.total_pages = max(audit.total_pages or 0, pages_discovered)
            if pages_processed is not None:
                audit.pages_processed = max(audit.pages_processed or 0, pages_processed)
            return audit

    def complete_audit(
        self,
        audit_id: str,
        pages: list[dict[str, Any]],
        issues: list[dict[str, Any]],
    ) -> Optional[SiteAudit]:
        """Persist crawl results, mark COMPLETED and append a history row.

        Only an IN_PROGRESS audit is finalised; any other row is returned
        unchanged.  Returns None if the row is gone.
        """
        summary = IssuesSummary.from_issues(issues).to_dict()
        with self.session() as session:
            audit = session.get(SiteAudit, audit_id)
            if audit is None:
                return None
            if audit.status != AuditStatus.IN_PROGRESS.value:
                logger.info("Audit %s is %s, results discarded", audit_id, audit.status)
                return audit
            audit.status = AuditStatus.COMPLETED.value
            audit.completed_at = utcnow()
            audit.progress_percentage = 100
            audit.total_pages = max(audit.total_pages or 0, len(pages))
            audit.pages_processed = len(pages)
            audit.page_results = {"pages": pages, "issues": issues}
            audit.issues_summary = summary
            audit.error_message = None
            session.add(AuditHistory(
                project_id=audit.project_id,
                audit_id=audit.id,
                total_pages=audit.total_pages,
                issues_summary=summary,
            ))
            logger.info(
                "Audit %s completed: %d pages, %d issues", audit_id, len(pages), summary["total"]
            )
            return audit

    def fail_audit(self, audit_id: str, message: Optional[str]) -> Optional[SiteAudit]:
        """Mark the audit FAILED with *message*; returns None if the row is gone."""
        with self.session() as session:
            audit = session.get(SiteAudit, audit_id)
            if audit is None:
                return None
            audit.status = AuditStatus.FAILED.value
            audit.completed_at = utcnow()
            audit.error_message = message or "Unknown error occurred"
            logger.warning("Audit %s failed: %s", audit_id, audit.error_message)
            return audit

    def list_history(self, project_id: Optional[str] = None, audit_id: Optional[str] = None) -> list[AuditHistory]:
        with self.session() as session:
            stmt = select(AuditHistory).order_by(AuditHistory.created_at.desc())
            if project_id is not None:
                stmt = stmt.where(AuditHistory.project_id == project_id)
            if audit_id is not None:
                stmt = stmt.where(AuditHistory.audit_id == audit_id)
            return list(session.scalars(stmt))

    # ------------------------------------------------------------------
    # Schedules
    # ------------------------------------------------------------------

    def get_schedule(self, schedule_id: str) -> Optional[AuditSchedule]:
        with self.session() as session:
            return session.get(AuditSchedule, schedule_id)

    def list_schedules(self, project_id: Optional[str] = None) -> list[AuditSchedule]:
        with self.session() as session:
            stmt = select(AuditSchedule).order_by(AuditSchedule.next_run_at)
            if project_id is not None:
                stmt = stmt.where(AuditSchedule.project_id == project_id)
            return list(session.scalars(stmt))

    def due_schedules(self, now: datetime) -> list[AuditSchedule]:
        """Active schedules whose ``next_run_at`` has elapsed."""
        with self.session() as session:
            stmt = (
                select(AuditSchedule)
                .where(AuditSchedule.is_active.is_(True))
                .where(AuditSchedule.next_run_at <= now)
                .order_by(AuditSchedule.next_run_at)
            )
            return list(session.scalars(stmt))

    def save_schedule(
        self,
        project_id: str,
        frequency: str,
        options: AuditOptions,
        next_run_at: datetime,
        is_active: bool = True,
        schedule_id: Optional[str] = None,
    ) -> AuditSchedule:
        """Create a schedule, or update it in place when *schedule_id* is given."""
        with self.session() as session:
            if schedule_id is not None:
                schedule = session.get(AuditSchedule, schedule_id)
                if schedule is None:
                    raise NotFound("AuditSchedule", schedule_id)
            else:
                if session.get(Project, project_id) is None:
                    raise NotFound("Project", project_id)
                schedule = AuditSchedule(project_id=project_id)
                session.add(schedule)
            schedule.frequency = frequency
            schedule.is_active = is_active
            schedule.options = options.to_dict()
            schedule.next_run_at = next_run_at
            session.flush()
            return schedule

    def advance_schedule(self, schedule_id: str, last_run_at: datetime, next_run_at: datetime) -> Optional[AuditSchedule]:
        with self.session() as session:
            schedule = session.get(AuditSchedule, schedule_id)
            if schedule is None:
                return None
            schedule.last_run_at = last_run_at
            schedule.next_run_at = next_run_at
            return schedule

    def delete_schedule(self, schedule_id: str) -> None:
        with self.session() as session:
            schedule = session.get(AuditSchedule, schedule_id)
            if schedule is None:
                raise NotFound("AuditSchedule", schedule_id)
            session.delete(schedule)
        logger.info("Schedule deleted: %s", schedule_id)
