"""Site crawling: the crawler contract and the aiohttp-based implementation."""

from site_audit.crawler.base import CrawlerService, CrawlRequest, CrawlResult, ProgressCallback
from site_audit.crawler.site_crawler import SiteCrawlerService

__all__ = [
    "CrawlerService",
    "CrawlRequest",
    "CrawlResult",
    "ProgressCallback",
    "SiteCrawlerService",
]
