"""Queue job handlers for the audit pipeline.

``run-audit`` is the heavy one: it drives the crawler, writes progress
back to the store and finalises the audit.  It re-reads the audit at every
checkpoint and stops quietly once the row has been deleted or cancelled.
"""

import asyncio
import logging
from typing import Any, Optional

from site_audit.crawler.base import CrawlerService, CrawlRequest
from site_audit.errors import AuditAborted, CrawlFailure
from site_audit.options import AuditStatus, JobType
from site_audit.queue import JobQueue, QueueJob
from site_audit.reports import render_report, write_report
from site_audit.scheduler import AuditScheduler
from site_audit.store import AuditStore

logger = logging.getLogger(__name__)

DEFAULT_CRAWL_TIMEOUT = 1800

# Progress bands: 10 when picked up, 20 before crawling, crawl maps into 20-95.
PICKED_UP_PROGRESS = 10
CRAWL_START_PROGRESS = 20
CRAWL_END_PROGRESS = 95


def crawl_progress(pages_processed: int, max_pages: int) -> int:
    span = CRAWL_END_PROGRESS - CRAWL_START_PROGRESS
    pct = CRAWL_START_PROGRESS + pages_processed * span // max(max_pages, 1)
    return min(pct, CRAWL_END_PROGRESS)


class AuditJobHandlers:
    """Handlers for every audit pipeline job type."""

    def __init__(
        self,
        store: AuditStore,
        crawler: CrawlerService,
        scheduler: AuditScheduler,
        crawl_timeout: float = DEFAULT_CRAWL_TIMEOUT,
        reports_dir: Optional[str] = None,
    ) -> None:
        self.store = store
        self.crawler = crawler
        self.scheduler = scheduler
        self.crawl_timeout = crawl_timeout
        self.reports_dir = reports_dir

    def register(self, queue: JobQueue) -> None:
        """Attach every handler and the failure listener to *queue*."""
        queue.register_handler(JobType.RUN_AUDIT, self.run_audit)
        queue.register_handler(JobType.SCHEDULE_AUDIT, self.schedule_audit)
        queue.register_handler(JobType.GENERATE_REPORT, self.generate_report)
        queue.register_handler(JobType.CHECK_SCHEDULES, self.check_schedules)
        queue.on_failure(self.on_job_failed)

    # ------------------------------------------------------------------
    # run-audit
    # ------------------------------------------------------------------

    async def run_audit(self, job: QueueJob) -> dict[str, Any]:
        audit_id = job.payload.get("auditId")
        audit = self.store.get_audit(audit_id) if audit_id else None
        if audit is None:
            logger.warning("Audit %s no longer exists, dropping job %s", audit_id, job.id)
            return {"auditId": audit_id, "outcome": "missing"}
        if audit.status == AuditStatus.FAILED.value:
            logger.info("Audit %s was cancelled before it started", audit_id)
            return {"auditId": audit_id, "outcome": "cancelled"}
        if audit.status == AuditStatus.COMPLETED.value:
            logger.info("Audit %s already completed, skipping", audit_id)
            return {"auditId": audit_id, "outcome": "skipped"}

        options = audit.audit_options
        try:
            started = self.store.mark_in_progress(audit_id, PICKED_UP_PROGRESS)
            if started is None:
                raise AuditAborted(f"Audit {audit_id} was deleted")
            if started.status != AuditStatus.IN_PROGRESS.value:
                raise AuditAborted(f"Audit {audit_id} is {started.status}")
            self._checkpoint(audit_id, CRAWL_START_PROGRESS)

            def on_progress(pages_discovered: int, pages_processed: int) -> None:
                self._checkpoint(
                    audit_id,
                    crawl_progress(pages_processed, options.max_pages),
                    pages_discovered,
                    pages_processed,
                )

            request = CrawlRequest.build(audit_id, audit.project_id, audit.site_url, options)
            logger.info("Crawling %s for audit %s", audit.site_url, audit_id)
            try:
                result = await asyncio.wait_for(
                    self.crawler.crawl(request, on_progress), timeout=self.crawl_timeout
                )
            except AuditAborted:
                raise
            except asyncio.TimeoutError:
                raise CrawlFailure(f"Crawl timed out after {self.crawl_timeout:g}s") from None
            except Exception as exc:
                raise CrawlFailure(str(exc) or exc.__class__.__name__) from exc

            self._checkpoint(audit_id, CRAWL_END_PROGRESS, len(result.pages), len(result.pages))
        except AuditAborted as exc:
            logger.info("Audit %s stopped: %s", audit_id, exc)
            return {"auditId": audit_id, "outcome": "aborted"}

        finished = self.store.complete_audit(audit_id, result.pages, result.issues)
        if finished is None or finished.status != AuditStatus.COMPLETED.value:
            logger.info("Audit %s changed before its results were saved", audit_id)
            return {"auditId": audit_id, "outcome": "aborted"}
        return {"auditId": audit_id, "outcome": "completed", "pages": len(result.pages)}

    def _checkpoint(
        self,
        audit_id: str,
        percentage: int,
        pages_discovered: Optional[int] = None,
        pages_processed: Optional[int] = None,
    ) -> None:
        """Write progress; raise ``AuditAborted`` if the audit is gone or no longer running."""
        audit = self.store.record_progress(audit_id, percentage, pages_discovered, pages_processed)
        if audit is None:
            raise AuditAborted(f"Audit {audit_id} was deleted")
        if audit.status != AuditStatus.IN_PROGRESS.value:
            raise AuditAborted(f"Audit {audit_id} is {audit.status}")

    # ------------------------------------------------------------------
    # Other job types
    # ------------------------------------------------------------------

    def schedule_audit(self, job: QueueJob) -> dict[str, Any]:
        schedule_id = job.payload.get("scheduleId")
        audit_id = self.scheduler.run_schedule(schedule_id)
        return {"scheduleId": schedule_id, "auditId": audit_id}

    def check_schedules(self, job: QueueJob) -> dict[str, Any]:
        created = self.scheduler.tick()
        return {"auditsCreated": created}

    def generate_report(self, job: QueueJob) -> dict[str, Any]:
        audit_id = job.payload.get("auditId")
        fmt = job.payload.get("format", "html")
        audit = self.store.get_audit(audit_id) if audit_id else None
        if audit is None or audit.status != AuditStatus.COMPLETED.value:
            logger.warning("Audit %s is not available for reporting, skipping", audit_id)
            return {"auditId": audit_id, "outcome": "skipped"}

        content = render_report(audit, fmt)
        if fmt == "html":
            def attach(row):
                row.html_report = content
            self.store.modify_audit(audit_id, attach)

        path = None
        if self.reports_dir:
            path = write_report(content, self.reports_dir, audit_id, fmt)
        logger.info("Report (%s) generated for audit %s", fmt, audit_id)
        return {"auditId": audit_id, "format": fmt, "path": path}

    # ------------------------------------------------------------------
    # Failure listener
    # ------------------------------------------------------------------

    def on_job_failed(self, job: QueueJob, exc: BaseException) -> None:
        """Mark the audit FAILED once its ``run-audit`` job is out of attempts."""
        if job.job_type != JobType.RUN_AUDIT:
            return
        audit_id = job.payload.get("auditId")
        audit = self.store.get_audit(audit_id) if audit_id else None
        if audit is None or AuditStatus(audit.status).is_terminal:
            return
        self.store.fail_audit(audit_id, str(exc) or exc.__class__.__name__)
