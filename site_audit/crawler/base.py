"""Crawler service contract.

The pipeline talks to crawlers only through :class:`CrawlRequest` and
:class:`CrawlResult`; any object with an async ``crawl`` method of the
same shape can stand in for :class:`CrawlerService`.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Optional

from site_audit.options import DEFAULT_USER_AGENT, AuditOptions

# on_progress(pages_discovered, pages_processed); raising aborts the crawl
ProgressCallback = Callable[[int, int], None]


@dataclass(frozen=True)
class CrawlRequest:
    audit_id: str
    project_id: Optional[str]
    site_url: str
    max_pages: int = 100
    max_depth: int = 3
    include_sitemap: bool = True
    include_robots: bool = True
    crawl_single_url: bool = False
    follow_patterns: tuple[str, ...] = ()
    ignore_patterns: tuple[str, ...] = ()
    user_agent: str = DEFAULT_USER_AGENT
    use_javascript: bool = True

    @classmethod
    def build(
        cls,
        audit_id: str,
        project_id: Optional[str],
        site_url: str,
        options: AuditOptions,
    ) -> "CrawlRequest":
        return cls(
            audit_id=audit_id,
            project_id=project_id,
            site_url=site_url,
            max_pages=options.max_pages,
            max_depth=options.max_depth,
            include_sitemap=options.include_sitemap,
            include_robots=options.include_robots,
            crawl_single_url=options.crawl_single_url,
            follow_patterns=tuple(options.follow_patterns),
            ignore_patterns=tuple(options.ignore_patterns),
            user_agent=options.user_agent,
            use_javascript=options.use_javascript,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CrawlResult:
    """Pages discovered and SEO issues found by one crawl.

    Each issue is a dict with at least ``severity`` (critical / warning /
    info), ``message`` and ``affected_urls``.
    """

    pages: list[dict[str, Any]] = field(default_factory=list)
    issues: list[dict[str, Any]] = field(default_factory=list)
    stats: dict[str, Any] = field(default_factory=dict)


class CrawlerService:
    """Base class for crawler implementations."""

    async def crawl(
        self,
        request: CrawlRequest,
        on_progress: Optional[ProgressCallback] = None,
    ) -> CrawlResult:
        raise NotImplementedError
