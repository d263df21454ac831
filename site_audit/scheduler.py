"""Recurring audit scheduler driven by the job queue.

A repeating ``check-audit-schedules`` job (hourly by default) calls
:meth:`AuditScheduler.tick`, which starts an audit for every active
schedule that is due and moves the schedule forward.

Usage::

    scheduler = AuditScheduler(store, lifecycle, queue)
    scheduler.start()
    ...
    scheduler.stop()
"""

import calendar
import logging
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional, Union

from site_audit.database import utcnow
from site_audit.errors import InvalidOptions, NotFound
from site_audit.lifecycle import AuditLifecycleManager
from site_audit.models import AuditSchedule
from site_audit.options import AuditOptions, Frequency, JobType
from site_audit.queue import JobQueue
from site_audit.store import AuditStore

logger = logging.getLogger(__name__)

DEFAULT_CHECK_CRON = "0 * * * *"


def add_month(moment: datetime) -> datetime:
    """Same day next month, clamped to the last day of a shorter month."""
    year = moment.year + moment.month // 12
    month = moment.month % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def next_run_at(now: datetime, frequency: Union[str, Frequency, None]) -> datetime:
    """Next run time for a schedule processed at *now*.

    Unknown frequencies fall back to weekly.
    """
    value = frequency.value if isinstance(frequency, Frequency) else str(frequency or "")
    value = value.strip().lower()
    if value == Frequency.DAILY.value:
        return now + timedelta(days=1)
    if value == Frequency.MONTHLY.value:
        return add_month(now)
    if value != Frequency.WEEKLY.value:
        logger.warning("Unknown schedule frequency %r, using weekly", frequency)
    return now + timedelta(days=7)


class AuditScheduler:
    """Finds due audit schedules and starts their audits."""

    def __init__(
        self,
        store: AuditStore,
        lifecycle: AuditLifecycleManager,
        queue: JobQueue,
        check_cron: str = DEFAULT_CHECK_CRON,
    ) -> None:
        self.store = store
        self.lifecycle = lifecycle
        self.queue = queue
        self.check_cron = check_cron
        self._running = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Register the repeating schedule check on the queue."""
        if self._running:
            logger.warning("Audit scheduler is already running.")
            return
        self.queue.add_repeating(JobType.CHECK_SCHEDULES, self.check_cron)
        self._running = True
        logger.info("Audit scheduler started [%s]", self.check_cron)

    def stop(self) -> None:
        if not self._running:
            return
        self.queue.remove_repeating(JobType.CHECK_SCHEDULES)
        self._running = False
        logger.info("Audit scheduler stopped.")

    # ------------------------------------------------------------------
    # Ticking
    # ------------------------------------------------------------------

    next_run_at = staticmethod(next_run_at)

    def tick(self, now: Optional[datetime] = None) -> list[str]:
        """Process every due schedule; returns the ids of audits started.

        Never raises: a failed scan is logged and the next tick retries,
        and each schedule is processed independently of the others.
        """
        now = now or utcnow()
        try:
            due = self.store.due_schedules(now)
        except Exception:
            logger.exception("Due schedule scan failed")
            return []

        if due:
            logger.info("Scheduler tick at %s: %d due schedule(s)", now.isoformat(), len(due))
        started: list[str] = []
        for schedule in due:
            try:
                audit_id = self.process_schedule(schedule, now)
            except Exception:
                logger.exception("Schedule %s could not be processed", schedule.id)
                continue
            if audit_id:
                started.append(audit_id)
        return started

    def process_schedule(self, schedule: AuditSchedule, now: datetime) -> Optional[str]:
        """Start one audit for *schedule* and advance it.

        The schedule is advanced whether or not the audit could be started,
        so a failing schedule does not fire on every tick.
        """
        audit_id: Optional[str] = None
        try:
            audit_id = self.lifecycle.start_audit(schedule.project_id, options=schedule.options)
            logger.info("Schedule %s started audit %s", schedule.id, audit_id)
        except Exception as exc:
            audit_id = getattr(exc, "audit_id", None)
            logger.error("Schedule %s could not start an audit: %s", schedule.id, exc)
        finally:
            upcoming = next_run_at(now, schedule.frequency)
            self.store.advance_schedule(schedule.id, last_run_at=now, next_run_at=upcoming)
            logger.debug("Schedule %s next run at %s", schedule.id, upcoming.isoformat())
        return audit_id

    def run_schedule(self, schedule_id: str, now: Optional[datetime] = None) -> Optional[str]:
        """Process a single schedule on demand; missing or inactive ones are skipped."""
        schedule = self.store.get_schedule(schedule_id)
        if schedule is None:
            logger.warning("Schedule %s not found, skipping", schedule_id)
            return None
        if not schedule.is_active:
            logger.info("Schedule %s is inactive, skipping", schedule_id)
            return None
        return self.process_schedule(schedule, now or utcnow())

    def trigger_schedule(self, schedule_id: str) -> str:
        """Enqueue a ``schedule-audit`` job for *schedule_id*; returns the job id."""
        if self.store.get_schedule(schedule_id) is None:
            raise NotFound("AuditSchedule", schedule_id)
        job = self.queue.enqueue(JobType.SCHEDULE_AUDIT, {"scheduleId": schedule_id})
        return job.id

    # ------------------------------------------------------------------
    # Schedule management
    # ------------------------------------------------------------------

    def save_schedule(
        self,
        project_id: str,
        frequency: Union[str, Frequency],
        options: Union[AuditOptions, Mapping[str, Any], None] = None,
        next_run_at: Optional[datetime] = None,
        is_active: bool = True,
        schedule_id: Optional[str] = None,
    ) -> AuditSchedule:
        """Create or update a schedule.

        Without an explicit *next_run_at* the first run is one period from now.
        """
        raw = frequency.value if isinstance(frequency, Frequency) else str(frequency)
        try:
            freq = Frequency(raw.strip().lower())
        except ValueError:
            raise InvalidOptions(f"Unknown schedule frequency: {frequency!r}") from None
        opts = AuditOptions.from_dict(options)
        first_run = next_run_at or AuditScheduler.next_run_at(utcnow(), freq)
        schedule = self.store.save_schedule(
            project_id,
            freq.value,
            opts,
            first_run,
            is_active=is_active,
            schedule_id=schedule_id,
        )
        logger.info("Schedule %s saved (%s, next %s)", schedule.id, freq.value, first_run.isoformat())
        return schedule

    def delete_schedule(self, schedule_id: str) -> None:
        self.store.delete_schedule(schedule_id)
