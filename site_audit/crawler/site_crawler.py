"""Async site crawler producing pages and SEO issues for an audit.

Fetches are made with aiohttp under a concurrency semaphore, parsed with
BeautifulSoup, and walked breadth-first so that ``max_depth`` and
``max_pages`` are honoured level by level.
"""

import asyncio
import logging
import time
from typing import Any, Optional

import aiohttp

from site_audit.crawler.base import CrawlerService, CrawlRequest, CrawlResult, ProgressCallback
from site_audit.crawler.checks import compile_issues, page_findings
from site_audit.crawler.parsing import (
    base_url,
    extract_domain,
    is_disallowed,
    is_followable,
    normalise_url,
    parse_page,
    parse_robots,
    parse_sitemap,
    same_domain,
)

logger = logging.getLogger(__name__)

_MAX_SITEMAP_DEPTH = 3


class SiteCrawlerService(CrawlerService):
    """Crawl a site over HTTP and report SEO issues."""

    def __init__(self, concurrency: int = 5, request_timeout: int = 20) -> None:
        self._concurrency = concurrency
        self._timeout = aiohttp.ClientTimeout(total=request_timeout)

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def crawl(
        self,
        request: CrawlRequest,
        on_progress: Optional[ProgressCallback] = None,
    ) -> CrawlResult:
        start_url = request.site_url if "://" in request.site_url else f"https://{request.site_url}"
        domain = extract_domain(start_url)
        semaphore = asyncio.Semaphore(self._concurrency)
        t0 = time.monotonic()

        if request.use_javascript:
            logger.debug("JavaScript rendering requested for %s; fetching raw HTML", start_url)

        headers = {"User-Agent": request.user_agent}
        async with aiohttp.ClientSession(timeout=self._timeout, headers=headers) as session:
            robots: dict[str, Any] = {}
            if request.include_robots:
                robots = await self.fetch_robots(session, start_url, request.user_agent)

            frontier = [start_url]
            if request.include_sitemap and not request.crawl_single_url:
                sitemap_urls = await self.fetch_sitemap_urls(session, start_url, robots.get("sitemaps", []))
                frontier.extend(u for u in sitemap_urls if same_domain(u, domain))

            pages = await self._walk(session, semaphore, request, frontier, domain, robots, on_progress)

        issues = compile_issues(pages)
        elapsed = round(time.monotonic() - t0, 2)
        logger.info(
            "Crawl of %s complete: %d pages, %d issues in %.1fs",
            start_url, len(pages), len(issues), elapsed,
        )
        return CrawlResult(
            pages=[_summarise(p) for p in pages],
            issues=issues,
            stats={
                "pages_crawled": len(pages),
                "elapsed_seconds": elapsed,
                "domain": domain,
                "start_url": start_url,
                "robots_found": bool(robots.get("exists")),
            },
        )

    # ------------------------------------------------------------------
    # Breadth-first walk
    # ------------------------------------------------------------------

    async def _walk(
        self,
        session: aiohttp.ClientSession,
        semaphore: asyncio.Semaphore,
        request: CrawlRequest,
        frontier: list[str],
        domain: str,
        robots: dict[str, Any],
        on_progress: Optional[ProgressCallback],
    ) -> list[dict[str, Any]]:
        visited: set[str] = set()
        discovered: set[str] = {normalise_url(u) for u in frontier}
        pages: list[dict[str, Any]] = []
        depth = 0

        while frontier and depth <= request.max_depth and len(visited) < request.max_pages:
            batch: list[str] = []
            for url in frontier:
                norm = normalise_url(url)
                if norm in visited or len(visited) >= request.max_pages:
                    continue
                if robots and is_disallowed(url, robots):
                    logger.debug("Skipping disallowed URL: %s", url)
                    continue
                if pages and not is_followable(url, request.follow_patterns, request.ignore_patterns):
                    continue
                visited.add(norm)
                batch.append(url)

            next_frontier: list[str] = []
            tasks = [asyncio.ensure_future(self.fetch_page(session, semaphore, u, domain)) for u in batch]
            try:
                for finished in asyncio.as_completed(tasks):
                    page = await finished
                    pages.append(page)
                    for link in page.get("internal_links", []):
                        norm = normalise_url(link)
                        if norm not in visited:
                            discovered.add(norm)
                            next_frontier.append(link)
                    if on_progress is not None:
                        on_progress(len(discovered), len(pages))
            except BaseException:
                for task in tasks:
                    task.cancel()
                raise

            if request.crawl_single_url:
                break
            frontier = next_frontier
            depth += 1

        return pages

    async def fetch_page(
        self,
        session: aiohttp.ClientSession,
        semaphore: asyncio.Semaphore,
        url: str,
        domain: str,
    ) -> dict[str, Any]:
        """Fetch a single page and extract SEO-relevant data."""
        async with semaphore:
            try:
                t0 = time.monotonic()
                async with session.get(url, allow_redirects=True) as resp:
                    status = resp.status
                    final_url = str(resp.url)
                    content_type = resp.headers.get("Content-Type", "")
                    if "text/html" not in content_type:
                        return {
                            "url": url,
                            "final_url": final_url,
                            "status_code": status,
                            "content_type": content_type,
                            "is_html": False,
                            "load_time": round(time.monotonic() - t0, 3),
                        }
                    html = await resp.text(errors="replace")
                load_time = round(time.monotonic() - t0, 3)
            except asyncio.TimeoutError:
                logger.warning("Timeout fetching %s", url)
                return {"url": url, "status_code": 0, "error": "timeout"}
            except aiohttp.ClientError as exc:
                logger.warning("Error fetching %s: %s", url, exc)
                return {"url": url, "status_code": 0, "error": str(exc)}

        return parse_page(url, final_url, status, html, domain, load_time)

    # ------------------------------------------------------------------
    # robots.txt / sitemap
    # ------------------------------------------------------------------

    async def fetch_robots(self, session: aiohttp.ClientSession, start_url: str, user_agent: str) -> dict[str, Any]:
        url = base_url(start_url) + "/robots.txt"
        text = await self._get_text(session, url)
        if text is None:
            logger.info("robots.txt not found at %s", url)
            return {}
        robots = parse_robots(text, user_agent)
        logger.info(
            "robots.txt: %d disallowed, %d sitemaps",
            len(robots["disallowed_paths"]), len(robots["sitemaps"]),
        )
        return robots

    async def fetch_sitemap_urls(
        self,
        session: aiohttp.ClientSession,
        start_url: str,
        declared: list[str],
    ) -> list[str]:
        """Collect page URLs from declared sitemaps, or ``/sitemap.xml``."""
        to_visit = [(u, 0) for u in (declared or [base_url(start_url) + "/sitemap.xml"])]
        seen: set[str] = set()
        urls: list[str] = []
        while to_visit:
            sitemap_url, depth = to_visit.pop(0)
            if sitemap_url in seen or depth > _MAX_SITEMAP_DEPTH:
                continue
            seen.add(sitemap_url)
            text = await self._get_text(session, sitemap_url)
            if text is None:
                continue
            pages, children = parse_sitemap(text)
            urls.extend(pages)
            to_visit.extend((child, depth + 1) for child in children)
        logger.info("Sitemap: %d URLs found across %d sitemaps", len(urls), len(seen))
        return urls

    async def _get_text(self, session: aiohttp.ClientSession, url: str) -> Optional[str]:
        try:
            async with session.get(url) as resp:
                if resp.status != 200:
                    return None
                return await resp.text(errors="replace")
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("Error fetching %s: %s", url, exc)
            return None


def _summarise(page: dict[str, Any]) -> dict[str, Any]:
    """Compact per-page record persisted with the audit results."""
    return {
        "url": page.get("url", ""),
        "final_url": page.get("final_url", page.get("url", "")),
        "status_code": page.get("status_code", 0),
        "title": page.get("title", ""),
        "meta_description": page.get("meta_description", ""),
        "h1": page.get("h1_tags", []),
        "word_count": page.get("word_count", 0),
        "load_time": page.get("load_time", 0.0),
        "internal_links": len(page.get("internal_links", [])),
        "external_links": len(page.get("external_links", [])),
        "images": len(page.get("images", [])),
        "error": page.get("error"),
        "issues": page_findings(page),
    }
