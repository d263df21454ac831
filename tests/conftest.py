"""Shared pytest fixtures for the site audit pipeline tests."""

import sys
from pathlib import Path

import pytest

# Ensure project root is on sys.path so 'site_audit' is importable.
_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from site_audit.crawler.base import CrawlerService, CrawlResult  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_db_engine():
    """Autouse fixture: reset the global DB engine before and after every test.

    This prevents cross-test pollution when tests create their own in-memory
    databases.
    """
    from site_audit.database import reset_engine
    reset_engine()
    yield
    reset_engine()


@pytest.fixture()
def test_db():
    """Provide an in-memory SQLite database with all tables created.

    Yields a database URL string. The engine is automatically torn down
    after the test by the autouse ``_reset_db_engine`` fixture.
    """
    from site_audit.database import reset_engine, init_db
    reset_engine()
    db_url = "sqlite:///:memory:"
    init_db(database_url=db_url, echo=False)
    yield db_url


@pytest.fixture()
def store(test_db):
    from site_audit.store import AuditStore
    return AuditStore()


@pytest.fixture()
def project(store):
    """Project ``p1`` pointing at https://example.com."""
    return store.create_project("Example", "https://example.com", project_id="p1")


@pytest.fixture()
def queue():
    """A queue that is never started; tests drive jobs with ``process``."""
    from site_audit.queue import JobQueue
    q = JobQueue(name="test-queue")
    yield q
    q.stop(wait=False)


@pytest.fixture()
def lifecycle(store, queue):
    from site_audit.lifecycle import AuditLifecycleManager
    return AuditLifecycleManager(store, queue)


@pytest.fixture()
def scheduler(store, lifecycle, queue):
    from site_audit.scheduler import AuditScheduler
    return AuditScheduler(store, lifecycle, queue)


class FakeCrawler(CrawlerService):
    """Crawler double returning canned results and reporting progress per page."""

    def __init__(self, pages=None, issues=None, error=None, before_progress=None):
        self.pages = pages if pages is not None else [
            {"url": "https://example.com/", "status_code": 200},
            {"url": "https://example.com/about", "status_code": 200},
        ]
        self.issues = issues if issues is not None else [
            {
                "type": "missing_meta_description",
                "severity": "warning",
                "message": "Missing meta description",
                "affected_urls": ["https://example.com/about"],
            },
            {
                "type": "missing_h1",
                "severity": "critical",
                "message": "Missing H1 heading",
                "affected_urls": ["https://example.com/"],
            },
        ]
        self.error = error
        self.before_progress = before_progress
        self.requests = []

    async def crawl(self, request, on_progress=None):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        for processed in range(1, len(self.pages) + 1):
            if self.before_progress is not None:
                self.before_progress(request)
            if on_progress is not None:
                on_progress(len(self.pages), processed)
        return CrawlResult(pages=list(self.pages), issues=list(self.issues))


@pytest.fixture()
def make_crawler():
    """The fake crawler class, for tests that need custom pages or failures."""
    return FakeCrawler


@pytest.fixture()
def fake_crawler():
    return FakeCrawler()


@pytest.fixture()
def handlers(store, scheduler, queue, fake_crawler):
    """Job handlers wired to the fake crawler and registered on the queue."""
    from site_audit.worker import AuditJobHandlers
    h = AuditJobHandlers(store, fake_crawler, scheduler, crawl_timeout=5)
    h.register(queue)
    return h
