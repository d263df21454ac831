"""Composition root for the audit pipeline."""

import logging
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from site_audit.crawler import CrawlerService, SiteCrawlerService
from site_audit.lifecycle import AuditLifecycleManager
from site_audit.queue import JobQueue
from site_audit.scheduler import DEFAULT_CHECK_CRON, AuditScheduler
from site_audit.store import AuditStore
from site_audit.worker import DEFAULT_CRAWL_TIMEOUT, AuditJobHandlers

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/settings.yaml"


class AuditPipelineApp:
    """Wires the store, queue, lifecycle manager, scheduler and worker together.

    Usage::

        app = AuditPipelineApp()
        app.initialize()
        app.start()
        audit_id = app.lifecycle.start_audit(project_id)
        app.stop()
    """

    def __init__(
        self,
        config_path: Optional[str] = None,
        env_path: str = ".env",
        crawler: Optional[CrawlerService] = None,
    ):
        self._config_path = config_path
        self._env_path = env_path
        self._crawler = crawler
        self.config: dict[str, Any] = {}
        self._initialized = False
        self._store: Optional[AuditStore] = None
        self._queue: Optional[JobQueue] = None
        self._lifecycle: Optional[AuditLifecycleManager] = None
        self._scheduler: Optional[AuditScheduler] = None
        self._handlers: Optional[AuditJobHandlers] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Load configuration and environment, initialise the DB and build components."""
        if self._initialized:
            return

        env_file = Path(self._env_path)
        if env_file.exists():
            load_dotenv(env_file)
            logger.info("Loaded environment from %s", self._env_path)

        self.config = self._load_config()

        reports_dir = self.config.get("reports", {}).get("output_dir")
        if reports_dir:
            Path(reports_dir).mkdir(parents=True, exist_ok=True)

        from site_audit.database import init_db
        db_cfg = self.config.get("database", {})
        db_url = os.getenv("DATABASE_URL") or db_cfg.get("url")
        init_db(database_url=db_url, echo=db_cfg.get("echo", False))

        queue_cfg = self.config.get("queue", {})
        sched_cfg = self.config.get("scheduler", {})
        crawler_cfg = self.config.get("crawler", {})

        self._store = AuditStore()
        self._queue = JobQueue(
            name=queue_cfg.get("name", "audit-queue"),
            max_attempts=queue_cfg.get("max_attempts", 3),
            backoff_seconds=queue_cfg.get("backoff_seconds", 5.0),
            keep_completed=queue_cfg.get("keep_completed", 100),
            keep_failed=queue_cfg.get("keep_failed", 200),
            timezone=sched_cfg.get("timezone", "UTC"),
        )
        self._lifecycle = AuditLifecycleManager(self._store, self._queue)
        self._scheduler = AuditScheduler(
            self._store,
            self._lifecycle,
            self._queue,
            check_cron=sched_cfg.get("check_cron", DEFAULT_CHECK_CRON),
        )
        crawler = self._crawler or SiteCrawlerService(
            concurrency=crawler_cfg.get("concurrency", 5),
            request_timeout=crawler_cfg.get("request_timeout", 20),
        )
        self._handlers = AuditJobHandlers(
            self._store,
            crawler,
            self._scheduler,
            crawl_timeout=crawler_cfg.get("crawl_timeout", DEFAULT_CRAWL_TIMEOUT),
            reports_dir=reports_dir,
        )
        self._handlers.register(self._queue)

        self._initialized = True
        logger.info("AuditPipelineApp initialised.")

    def _load_config(self) -> dict[str, Any]:
        """Load the YAML configuration file."""
        path = self._config_path or os.getenv("SITE_AUDIT_CONFIG", DEFAULT_CONFIG_PATH)
        config_file = Path(path)
        if not config_file.exists():
            logger.warning("Config file not found: %s, using defaults.", path)
            return {}
        with open(config_file, "r", encoding="utf-8") as fh:
            config = yaml.safe_load(fh) or {}
        logger.info("Configuration loaded from %s", path)
        return config

    def start(self) -> None:
        """Start the queue worker and, when enabled, the recurring schedule check."""
        self._ensure_initialized()
        self._queue.start()
        if self.config.get("queue", {}).get("requeue_pending_on_start", True):
            self._lifecycle.requeue_pending()
        if self.config.get("scheduler", {}).get("enabled", True):
            self._scheduler.start()

    def stop(self, wait: bool = True) -> None:
        if not self._initialized:
            return
        self._scheduler.stop()
        self._queue.stop(wait=wait)
        logger.info("AuditPipelineApp stopped.")

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    @property
    def store(self) -> AuditStore:
        self._ensure_initialized()
        return self._store

    @property
    def queue(self) -> JobQueue:
        self._ensure_initialized()
        return self._queue

    @property
    def lifecycle(self) -> AuditLifecycleManager:
        self._ensure_initialized()
        return self._lifecycle

    @property
    def scheduler(self) -> AuditScheduler:
        self._ensure_initialized()
        return self._scheduler

    @property
    def handlers(self) -> AuditJobHandlers:
        self._ensure_initialized()
        return self._handlers

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> dict[str, dict[str, Any]]:
        """Return health status of all major components."""
        self._ensure_initialized()
        status: dict[str, dict[str, Any]] = {}

        try:
            from sqlalchemy import inspect
            from site_audit.database import get_engine
            tables = inspect(get_engine()).get_table_names()
            status["database"] = {"status": "ok", "details": f"{len(tables)} tables"}
        except Exception as exc:
            status["database"] = {"status": "error", "details": str(exc)}

        counts = self._queue.counts()
        status["queue"] = {
            "status": "ok" if self._queue.is_running else "warning",
            "details": "{state}, {w} waiting, {a} active, {d} delayed, {c} completed, {f} failed".format(
                state="running" if self._queue.is_running else "stopped",
                w=counts["waiting"], a=counts["active"], d=counts["delayed"],
                c=counts["completed"], f=counts["failed"],
            ),
        }

        status["scheduler"] = {
            "status": "ok" if self._scheduler.is_running else "warning",
            "details": "{state} [{cron}]".format(
                state="running" if self._scheduler.is_running else "stopped",
                cron=self._scheduler.check_cron,
            ),
        }

        status["config"] = {
            "status": "ok" if self.config else "warning",
            "details": f"{len(self.config)} sections loaded" if self.config else "no config",
        }
        return status

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise RuntimeError("Call initialize() before using the application.")
