"""In-process job queue built on APScheduler.

Jobs are dispatched by type to registered handlers on a single worker
thread.  Failed jobs are retried with exponential backoff; once the
attempt budget is spent the job is recorded as permanently failed and
failure listeners are notified.

Usage::

    queue = JobQueue()
    queue.register_handler("run-audit", handle_run_audit)
    queue.on_failure(mark_audit_failed)
    queue.start()
    queue.enqueue("run-audit", {"auditId": audit_id})
    queue.stop()
"""

import asyncio
import inspect
import logging
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from site_audit.database import utcnow
from site_audit.errors import QueueUnavailable

logger = logging.getLogger(__name__)

WAITING = "waiting"
ACTIVE = "active"
DELAYED = "delayed"
COMPLETED = "completed"
FAILED = "failed"


@dataclass
class QueueJob:
    """A unit of queued work."""

    job_type: str
    payload: dict[str, Any]
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: str = WAITING
    attempts: int = 0
    max_attempts: int = 3
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    result: Any = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.job_type,
            "status": self.status,
            "attempts": self.attempts,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
        }


Handler = Callable[[QueueJob], Any]
FailureListener = Callable[[QueueJob, BaseException], None]


class JobQueue:
    """Single-worker job queue with retry, backoff and bounded history."""

    def __init__(
        self,
        name: str = "audit-queue",
        max_attempts: int = 3,
        backoff_seconds: float = 5.0,
        keep_completed: int = 100,
        keep_failed: int = 200,
        timezone: str = "UTC",
    ) -> None:
        self.name = name
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds

        self._scheduler = BackgroundScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": ThreadPoolExecutor(max_workers=1)},
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": None,
            },
            timezone=timezone,
        )
        self._timezone = timezone
        self._handlers: dict[str, Handler] = {}
        self._failure_listeners: list[FailureListener] = []
        self._jobs: dict[str, QueueJob] = {}
        self._completed: deque[QueueJob] = deque(maxlen=keep_completed)
        self._failed: deque[QueueJob] = deque(maxlen=keep_failed)
        self._lock = threading.RLock()
        self._running = False
        self._closed = False
        logger.info(
            "JobQueue %s initialized (attempts=%d, backoff=%.1fs)",
            name, max_attempts, backoff_seconds,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        """Start consuming jobs."""
        if self._closed:
            raise QueueUnavailable(f"Queue {self.name} has been shut down")
        if self._running:
            logger.warning("Queue %s is already running.", self.name)
            return
        self._scheduler.start()
        self._running = True
        logger.info("Queue %s started.", self.name)

    def stop(self, wait: bool = True) -> None:
        """Shut down the worker.  The queue refuses new jobs afterwards."""
        self._closed = True
        if not self._running:
            return
        self._scheduler.shutdown(wait=wait)
        self._running = False
        logger.info("Queue %s stopped.", self.name)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_handler(self, job_type: str, handler: Handler) -> None:
        self._handlers[job_type] = handler
        logger.debug("Handler registered for job type: %s", job_type)

    def on_failure(self, listener: FailureListener) -> None:
        """Call *listener(job, error)* when a job fails permanently."""
        self._failure_listeners.append(listener)

    # ------------------------------------------------------------------
    # Producing
    # ------------------------------------------------------------------

    def enqueue(self, job_type: str, payload: Optional[dict[str, Any]] = None, delay: float = 0) -> QueueJob:
        """Add a job and return it.

        Raises:
            QueueUnavailable: the queue is shut down or the backend
                refused the job.
        """
        if self._closed:
            raise QueueUnavailable(f"Queue {self.name} is not accepting jobs")
        job = QueueJob(job_type=job_type, payload=dict(payload or {}), max_attempts=self.max_attempts)
        with self._lock:
            self._jobs[job.id] = job
        try:
            self._dispatch(job, delay)
        except Exception as exc:
            with self._lock:
                self._jobs.pop(job.id, None)
            raise QueueUnavailable(f"Could not enqueue {job_type} job: {exc}") from exc
        logger.info("Job %s (%s) added to queue %s", job.id, job_type, self.name)
        return job

    def add_repeating(self, job_type: str, cron: str, payload: Optional[dict[str, Any]] = None) -> str:
        """Enqueue a *job_type* job on every firing of a 5-field cron expression.

        The repeating entry is keyed by *job_type*, so registering it again
        replaces the previous one instead of duplicating it.
        """
        parts = cron.strip().split()
        if len(parts) != 5:
            raise ValueError(f"Cron expression must have 5 fields, got {len(parts)}: {cron!r}")
        trigger = CronTrigger(
            minute=parts[0],
            hour=parts[1],
            day=parts[2],
            month=parts[3],
            day_of_week=parts[4],
            timezone=self._timezone,
        )
        repeat_id = f"repeat:{job_type}"
        self._scheduler.add_job(
            self._fire_repeating,
            trigger=trigger,
            id=repeat_id,
            args=(job_type, dict(payload or {})),
            replace_existing=True,
        )
        logger.info("Repeating job added: %s [%s]", job_type, cron)
        return repeat_id

    def remove_repeating(self, job_type: str) -> bool:
        try:
            self._scheduler.remove_job(f"repeat:{job_type}")
        except Exception:
            logger.warning("Repeating job not found: %s", job_type)
            return False
        logger.info("Repeating job removed: %s", job_type)
        return True

    def _fire_repeating(self, job_type: str, payload: dict[str, Any]) -> None:
        try:
            self.enqueue(job_type, {**payload, "timestamp": utcnow().isoformat()})
        except QueueUnavailable as exc:
            logger.error("Repeating job %s could not be enqueued: %s", job_type, exc)

    def _dispatch(self, job: QueueJob, delay: float) -> None:
        run_date = utcnow() + timedelta(seconds=delay)
        self._scheduler.add_job(
            self.process,
            trigger=DateTrigger(run_date=run_date, timezone=self._timezone),
            id=f"{job.id}:{job.attempts + 1}",
            args=(job.id,),
        )

    # ------------------------------------------------------------------
    # Consuming
    # ------------------------------------------------------------------

    def process(self, job_id: str) -> Optional[QueueJob]:
        """Run one attempt of a job.  This is the worker body."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status == ACTIVE:
                return job
            job.status = ACTIVE
            job.attempts += 1
            job.started_at = utcnow()

        handler = self._handlers.get(job.job_type)
        if handler is None:
            error = LookupError(f"No handler registered for job type: {job.job_type}")
            logger.error("Job %s failed: %s", job.id, error)
            self._finish_failed(job, error)
            return job

        logger.info("Processing job %s of type %s (attempt %d/%d)",
                    job.id, job.job_type, job.attempts, job.max_attempts)
        try:
            result = handler(job)
            if inspect.isawaitable(result):
                result = asyncio.run(_await(result))
        except Exception as exc:
            if job.attempts < job.max_attempts:
                self._retry(job, exc)
            else:
                logger.error("Job %s (%s) failed permanently: %s", job.id, job.job_type, exc)
                self._finish_failed(job, exc)
            return job

        with self._lock:
            job.status = COMPLETED
            job.result = result
            job.finished_at = utcnow()
            self._jobs.pop(job.id, None)
            self._completed.append(job)
        logger.info("Job %s (%s) completed", job.id, job.job_type)
        return job

    def run_pending(self) -> int:
        """Process waiting and delayed jobs inline until none are left.

        Retry delays are not honoured.  Meant for one-shot command-line
        runs where no worker thread is started; returns the number of
        attempts made.
        """
        processed = 0
        while True:
            with self._lock:
                pending = [j.id for j in self._jobs.values() if j.status in (WAITING, DELAYED)]
            if not pending:
                return processed
            for job_id in pending:
                self.process(job_id)
                processed += 1

    def backoff_for(self, attempt: int) -> float:
        """Delay before the retry that follows *attempt* (1-based)."""
        return self.backoff_seconds * (2 ** (attempt - 1))

    def _retry(self, job: QueueJob, exc: BaseException) -> None:
        delay = self.backoff_for(job.attempts)
        with self._lock:
            job.status = DELAYED
            job.error = str(exc)
        logger.warning(
            "Job %s (%s) attempt %d failed: %s; retrying in %.1fs",
            job.id, job.job_type, job.attempts, exc, delay,
        )
        try:
            self._dispatch(job, delay)
        except Exception as dispatch_exc:
            logger.error("Could not reschedule job %s: %s", job.id, dispatch_exc)
            self._finish_failed(job, exc)

    def _finish_failed(self, job: QueueJob, exc: BaseException) -> None:
        with self._lock:
            job.status = FAILED
            job.error = str(exc) or exc.__class__.__name__
            job.finished_at = utcnow()
            self._jobs.pop(job.id, None)
            self._failed.append(job)
        for listener in self._failure_listeners:
            try:
                listener(job, exc)
            except Exception:
                logger.exception("Failure listener raised for job %s", job.id)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def get_job(self, job_id: str) -> Optional[QueueJob]:
        with self._lock:
            if job_id in self._jobs:
                return self._jobs[job_id]
            for job in list(self._completed) + list(self._failed):
                if job.id == job_id:
                    return job
        return None

    def jobs(self, status: Optional[str] = None, job_type: Optional[str] = None) -> list[QueueJob]:
        """All known jobs, oldest first, optionally filtered."""
        with self._lock:
            everything = list(self._jobs.values()) + list(self._completed) + list(self._failed)
        everything.sort(key=lambda j: j.created_at)
        return [
            j for j in everything
            if (status is None or j.status == status)
            and (job_type is None or j.job_type == job_type)
        ]

    def counts(self) -> dict[str, int]:
        with self._lock:
            counts = {WAITING: 0, ACTIVE: 0, DELAYED: 0}
            for job in self._jobs.values():
                counts[job.status] = counts.get(job.status, 0) + 1
            counts[COMPLETED] = len(self._completed)
            counts[FAILED] = len(self._failed)
        return counts

    def list_repeating(self) -> list[dict[str, Any]]:
        result = []
        for job in self._scheduler.get_jobs():
            if not job.id.startswith("repeat:"):
                continue
            next_run = getattr(job, "next_run_time", None)
            result.append({
                "id": job.id,
                "trigger": str(job.trigger),
                "next_run_time": next_run.isoformat() if next_run else None,
            })
        return result


async def _await(awaitable):
    return await awaitable
