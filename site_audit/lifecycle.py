"""Audit lifecycle manager.

The only component that creates, mutates and retires audit records on
behalf of callers.  Every operation writes through the :class:`AuditStore`
and, where work has to happen in the background, hands a job to the
:class:`JobQueue`.  Store writes and enqueues are not transactional: when
an enqueue fails right after the audit row was written, the audit is moved
to FAILED so it never sits in PENDING with no job behind it.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Optional, Union

from site_audit.database import utcnow
from site_audit.errors import InvalidOptions, InvalidState, NotFound, QueueUnavailable
from site_audit.models import SiteAudit
from site_audit.options import AuditOptions, AuditStatus, JobType
from site_audit.progress import AuditProgress, build_progress
from site_audit.queue import JobQueue
from site_audit.store import AuditStore

logger = logging.getLogger(__name__)

REPORT_FORMATS = ("html", "json")
DEFAULT_CANCEL_REASON = "Cancelled by operator"
DEFAULT_INSIGHTS_MAX_AGE = timedelta(hours=24)

InsightsProvider = Callable[[SiteAudit], Any]
OptionsInput = Union[AuditOptions, Mapping[str, Any], None]


class AuditLifecycleManager:
    """Start, update, restart, cancel and delete audits."""

    def __init__(self, store: AuditStore, queue: JobQueue) -> None:
        self.store = store
        self.queue = queue

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def start_audit(
        self,
        project_id: Optional[str],
        options: OptionsInput = None,
        site_url: Optional[str] = None,
    ) -> str:
        """Create a PENDING audit and enqueue its crawl.

        Args:
            project_id: Owning project.  Its current URL is used when
                *site_url* is not given.
            options: ``AuditOptions``, a JSON-like mapping, or None for
                defaults.
            site_url: Explicit URL to audit.

        Returns:
            The new audit id.

        Raises:
            NotFound: the project does not exist.
            InvalidOptions: *options* failed validation.
            QueueUnavailable: the crawl could not be enqueued; the audit
                has been marked FAILED and its id is on the exception.
        """
        opts = AuditOptions.from_dict(options)

        if project_id is not None:
            project = self.store.get_project(project_id)
            if project is None:
                raise NotFound("Project", project_id)
            site_url = site_url or project.url
        if not site_url:
            raise InvalidOptions("site_url is required when no project is given")

        audit = self.store.create_audit(project_id, site_url, opts)
        self._enqueue_run(audit.id, project_id, site_url, opts)
        logger.info("Audit %s started for %s", audit.id, site_url)
        return audit.id

    def _enqueue_run(
        self,
        audit_id: str,
        project_id: Optional[str],
        site_url: str,
        opts: AuditOptions,
    ) -> None:
        payload = {
            "auditId": audit_id,
            "projectId": project_id,
            "siteUrl": site_url,
            **opts.to_dict(),
        }
        try:
            self.queue.enqueue(JobType.RUN_AUDIT, payload)
        except QueueUnavailable as exc:
            message = f"Failed to queue audit job: {exc}"
            logger.error("Audit %s: %s", audit_id, message)
            self.store.fail_audit(audit_id, message)
            raise QueueUnavailable(message, audit_id=audit_id) from exc

    def requeue_pending(self) -> list[str]:
        """Enqueue a crawl for every PENDING audit.

        Jobs live in memory, so audits created by a process that exited
        before its worker ran them are still PENDING in the store.  Called
        when a worker starts.
        """
        requeued = []
        for audit in self.store.list_audits(status=AuditStatus.PENDING):
            try:
                self._enqueue_run(audit.id, audit.project_id, audit.site_url, audit.audit_options)
            except QueueUnavailable:
                logger.error("Could not requeue audit %s", audit.id)
                continue
            requeued.append(audit.id)
        if requeued:
            logger.info("Requeued %d pending audit(s)", len(requeued))
        return requeued

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def update_audit(self, audit_id: str, changes: Mapping[str, Any]) -> SiteAudit:
        """Merge option changes and/or a new ``site_url`` into an audit.

        Options may be given flat (``{"maxPages": 20}``) or nested under
        ``options``.  Audits that are being crawled cannot be changed.
        """
        if not isinstance(changes, Mapping):
            raise InvalidOptions("changes must be a mapping")
        changes = dict(changes)
        nested = changes.pop("options", None) or {}
        if not isinstance(nested, Mapping):
            raise InvalidOptions("options must be a mapping")
        new_url = changes.pop("site_url", None)
        new_url = changes.pop("siteUrl", new_url)
        option_changes = {**nested, **changes}

        def apply(audit: SiteAudit) -> None:
            if audit.status == AuditStatus.IN_PROGRESS.value:
                raise InvalidState(f"Audit {audit_id} is in progress and cannot be updated")
            if option_changes:
                audit.options = audit.audit_options.merge(option_changes).to_dict()
            if new_url is not None:
                if not isinstance(new_url, str) or not new_url.strip():
                    raise InvalidOptions("site_url must be a non-empty string")
                audit.site_url = new_url.strip()

        audit = self.store.modify_audit(audit_id, apply)
        logger.info("Audit %s updated", audit_id)
        return audit

    def delete_audit(self, audit_id: str) -> None:
        """Delete an audit and its history.

        A worker still processing the audit notices the row is gone at its
        next checkpoint and stops.
        """
        self.store.delete_audit(audit_id)

    def restart_audit(self, audit_id: str) -> str:
        """Reset a completed or failed audit to PENDING and enqueue a new crawl with its stored options."""

        def reset(audit: SiteAudit) -> None:
            if audit.status == AuditStatus.IN_PROGRESS.value:
                raise InvalidState(f"Audit {audit_id} is in progress and cannot be restarted")
            if audit.status == AuditStatus.PENDING.value:
                raise InvalidState(f"Audit {audit_id} is already queued")
            audit.status = AuditStatus.PENDING.value
            audit.started_at = utcnow()
            audit.completed_at = None
            audit.error_message = None
            audit.progress_percentage = None
            audit.total_pages = 0
            audit.pages_processed = 0

        audit = self.store.modify_audit(audit_id, reset)
        self._enqueue_run(audit.id, audit.project_id, audit.site_url, audit.audit_options)
        logger.info("Audit %s restarted", audit_id)
        return audit.id

    def cancel_audit(self, audit_id: str, reason: str = DEFAULT_CANCEL_REASON) -> SiteAudit:
        """Mark a PENDING or IN_PROGRESS audit FAILED.

        The worker checks the status between progress updates and stops
        once it sees the cancellation.
        """

        def cancel(audit: SiteAudit) -> None:
            if AuditStatus(audit.status).is_terminal:
                raise InvalidState(f"Audit {audit_id} is already {audit.status}")
            audit.status = AuditStatus.FAILED.value
            audit.completed_at = utcnow()
            audit.error_message = reason or DEFAULT_CANCEL_REASON

        audit = self.store.modify_audit(audit_id, cancel)
        logger.warning("Audit %s cancelled: %s", audit_id, audit.error_message)
        return audit

    # ------------------------------------------------------------------
    # Reports & reads
    # ------------------------------------------------------------------

    def generate_report(self, audit_id: str, fmt: str = "html") -> str:
        """Enqueue report rendering for a completed audit; returns the job id."""
        audit = self.store.require_audit(audit_id)
        fmt = (fmt or "").lower()
        if fmt not in REPORT_FORMATS:
            raise InvalidOptions(f"Unsupported report format: {fmt!r}")
        if audit.status != AuditStatus.COMPLETED.value:
            raise InvalidState(f"Audit {audit_id} is {audit.status}; reports need a completed audit")
        job = self.queue.enqueue(JobType.GENERATE_REPORT, {"auditId": audit_id, "format": fmt})
        logger.info("Report (%s) queued for audit %s as job %s", fmt, audit_id, job.id)
        return job.id

    def get_audit(self, audit_id: str) -> SiteAudit:
        return self.store.require_audit(audit_id)

    def get_progress(self, audit_id: str) -> AuditProgress:
        return build_progress(self.store.require_audit(audit_id))

    def get_ai_insights(
        self,
        audit_id: str,
        provider: InsightsProvider,
        max_age: timedelta = DEFAULT_INSIGHTS_MAX_AGE,
        now: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Return cached AI insights, regenerating them once they are stale.

        *provider* is called with the audit and may return a mapping or any
        JSON-serialisable value.
        """
        now = now or utcnow()
        audit = self.store.require_audit(audit_id)
        if audit.status != AuditStatus.COMPLETED.value:
            raise InvalidState(f"Audit {audit_id} is {audit.status}; insights need a completed audit")

        cached = audit.ai_insights
        generated_at = _parse_timestamp(cached.get("timestamp")) if isinstance(cached, dict) else None
        if generated_at is not None and now - generated_at < max_age:
            logger.debug("Using cached insights for audit %s", audit_id)
            return cached

        result = provider(audit)
        insights = dict(result) if isinstance(result, Mapping) else {"insights": result}
        insights["timestamp"] = now.isoformat()

        def store_insights(row: SiteAudit) -> None:
            row.ai_insights = insights

        self.store.modify_audit(audit_id, store_insights)
        logger.info("Insights generated for audit %s", audit_id)
        return insights


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
