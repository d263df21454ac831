"""Tests for the site crawler: parsing helpers, SEO checks and the BFS walk."""

import pytest

from site_audit.crawler import CrawlRequest
from site_audit.crawler.checks import compile_issues, page_findings
from site_audit.crawler.parsing import (
    is_disallowed,
    is_followable,
    matches_any,
    normalise_url,
    parse_page,
    parse_robots,
    parse_sitemap,
)
from site_audit.crawler.site_crawler import SiteCrawlerService

LONG_TEXT = " ".join(["word"] * 320)


def _html(title="", body="", head=""):
    return (
        "<html><head>"
        f"<title>{title}</title>{head}"
        "</head><body>"
        f"{body}"
        "</body></html>"
    )


# ===========================================================================
# URL helpers
# ===========================================================================
class TestUrlHelpers:

    def test_normalise_url(self):
        assert normalise_url("https://Example.com/blog/?page=2#top") == "https://example.com/blog"
        assert normalise_url("https://example.com") == "https://example.com/"

    def test_matches_any_path_and_full_url(self):
        assert matches_any("https://example.com/blog/post-1", ["/blog/*"])
        assert matches_any("https://example.com/files/report.pdf", ["*.pdf"])
        assert not matches_any("https://example.com/about", ["/blog/*", "*.pdf"])

    def test_is_followable(self):
        url = "https://example.com/blog/post-1"
        assert is_followable(url, [], [])
        assert is_followable(url, ["/blog/*"], [])
        assert not is_followable(url, ["/shop/*"], [])
        assert not is_followable(url, ["/blog/*"], ["*post-1"])


# ===========================================================================
# HTML parsing
# ===========================================================================
class TestParsePage:

    def test_extracts_seo_signals(self):
        html = _html(
            title="Example Domain Home",
            head=(
                '<meta name="description" content="An example site">'
                '<meta name="viewport" content="width=device-width">'
                '<link rel="canonical" href="https://example.com/">'
                '<script type="application/ld+json">{"@type": "Organization"}</script>'
            ),
            body=(
                "<h1>Welcome</h1><h2>About</h2>"
                '<a href="/about">About</a>'
                '<a href="https://www.example.com/contact#form">Contact</a>'
                '<a href="https://other.org/">Elsewhere</a>'
                '<a href="mailto:hi@example.com">Mail</a>'
                '<img src="/logo.png" alt="Logo"><img src="/hero.png">'
            ),
        )
        page = parse_page("https://example.com/", "https://example.com/", 200, html, "example.com")

        assert page["title"] == "Example Domain Home"
        assert page["meta_description"] == "An example site"
        assert page["has_viewport"] is True
        assert page["canonical_url"] == "https://example.com/"
        assert page["h1_tags"] == ["Welcome"]
        assert page["h2_tags"] == ["About"]
        assert page["internal_links"] == ["https://example.com/about", "https://www.example.com/contact"]
        assert page["external_links"] == ["https://other.org/"]
        assert page["images"] == [
            {"src": "https://example.com/logo.png", "alt": "Logo"},
            {"src": "https://example.com/hero.png", "alt": ""},
        ]
        assert page["structured_data_types"] == ["Organization"]

    def test_word_count_ignores_scripts(self):
        html = _html(body="<p>one two three</p><script>var a = 1;</script>")
        page = parse_page("https://example.com/", "https://example.com/", 200, html, "example.com")
        assert page["word_count"] == 3


# ===========================================================================
# robots.txt and sitemaps
# ===========================================================================
class TestRobots:

    ROBOTS = (
        "User-agent: *\n"
        "Disallow: /admin\n"
        "Allow: /admin/public\n"
        "Crawl-delay: 2\n"
        "\n"
        "User-agent: BadBot\n"
        "Disallow: /\n"
        "\n"
        "Sitemap: https://example.com/sitemap.xml\n"
    )

    def test_parse_robots(self):
        robots = parse_robots(self.ROBOTS, "SEO-Audit-Bot/1.0")
        assert robots["disallowed_paths"] == ["/admin"]
        assert robots["allowed_paths"] == ["/admin/public"]
        assert robots["crawl_delay"] == 2.0
        assert robots["sitemaps"] == ["https://example.com/sitemap.xml"]

    def test_rules_for_named_agent(self):
        robots = parse_robots(self.ROBOTS, "BadBot/2.0")
        assert "/" in robots["disallowed_paths"]

    def test_longest_match_wins(self):
        robots = parse_robots(self.ROBOTS, "SEO-Audit-Bot/1.0")
        assert is_disallowed("https://example.com/admin/users", robots)
        assert not is_disallowed("https://example.com/admin/public/page", robots)
        assert not is_disallowed("https://example.com/blog", robots)


class TestSitemap:

    def test_urlset(self):
        xml = (
            '<?xml version="1.0" encoding="UTF-8"?>'
            '<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">'
            "<url><loc>https://example.com/</loc></url>"
            "<url><loc> https://example.com/about </loc></url>"
            "</urlset>"
        )
        assert parse_sitemap(xml) == (["https://example.com/", "https://example.com/about"], [])

    def test_index(self):
        xml = (
            '<sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">'
            "<sitemap><loc>https://example.com/posts.xml</loc></sitemap>"
            "</sitemapindex>"
        )
        assert parse_sitemap(xml) == ([], ["https://example.com/posts.xml"])

    def test_malformed(self):
        assert parse_sitemap("<urlset><url>") == ([], [])


# ===========================================================================
# SEO checks
# ===========================================================================
class TestChecks:

    def test_healthy_page_has_no_findings(self):
        page = {
            "url": "https://example.com/",
            "status_code": 200,
            "is_html": True,
            "title": "A descriptive page title for our example site",
            "meta_description": "Description",
            "h1_tags": ["Welcome"],
            "images": [{"src": "x.png", "alt": "x"}],
            "has_viewport": True,
            "word_count": 500,
            "robots_meta": "",
            "structured_data_types": ["Organization"],
        }
        assert page_findings(page) == []

    def test_error_pages_short_circuit(self):
        assert page_findings({"url": "https://example.com/x", "status_code": 0, "error": "timeout"}) == ["fetch_error"]
        assert page_findings({"url": "https://example.com/x", "status_code": 404}) == ["http_error"]

    def test_bare_page_findings(self):
        page = parse_page("http://example.com/", "http://example.com/", 200, _html(), "example.com")
        found = page_findings(page)
        for check in ("not_https", "missing_title", "missing_meta_description", "missing_h1",
                      "missing_viewport", "thin_content", "no_structured_data"):
            assert check in found

    def test_compile_issues_groups_and_orders(self):
        pages = [
            {"url": "https://example.com/a", "status_code": 200, "is_html": True, "title": "Same title",
             "h1_tags": ["A"], "word_count": 400, "structured_data_types": ["WebPage"]},
            {"url": "https://example.com/b", "status_code": 200, "is_html": True, "title": "Same Title",
             "h1_tags": [], "word_count": 400, "structured_data_types": ["WebPage"]},
            {"url": "https://example.com/c", "status_code": 500},
        ]
        issues = compile_issues(pages)
        by_type = {i["type"]: i for i in issues}

        assert by_type["duplicate_title"]["affected_urls"] == ["https://example.com/a", "https://example.com/b"]
        assert by_type["missing_h1"]["affected_urls"] == ["https://example.com/b"]
        assert by_type["http_error"]["severity"] == "critical"
        severities = [i["severity"] for i in issues]
        assert severities == sorted(severities, key=["critical", "warning", "info"].index)
        assert all(i["fix"] and i["message"] for i in issues)


# ===========================================================================
# BFS crawl with fetches stubbed out
# ===========================================================================
SITE = {
    "https://example.com/": _html("Home", '<h1>Home</h1><a href="/a">A</a><a href="/b">B</a>'),
    "https://example.com/a": _html("A", '<h1>A</h1><a href="/c">C</a><a href="/">Home</a>'),
    "https://example.com/b": _html("B", '<h1>B</h1><a href="/a">A</a>'),
    "https://example.com/c": _html("C", "<h1>C</h1>" + LONG_TEXT),
}


def _stub_crawler(robots=None, sitemap=None):
    crawler = SiteCrawlerService(concurrency=2)
    fetched = []

    async def fetch_page(session, semaphore, url, domain):
        fetched.append(url)
        key = normalise_url(url)
        if key not in SITE:
            return {"url": url, "status_code": 404}
        return parse_page(url, url, 200, SITE[key], domain)

    async def fetch_robots(session, start_url, user_agent):
        return robots or {}

    async def fetch_sitemap_urls(session, start_url, declared):
        return list(sitemap or [])

    crawler.fetch_page = fetch_page
    crawler.fetch_robots = fetch_robots
    crawler.fetch_sitemap_urls = fetch_sitemap_urls
    return crawler, fetched


def _request(**overrides):
    values = {"audit_id": "a1", "project_id": "p1", "site_url": "https://example.com"}
    values.update(overrides)
    return CrawlRequest(**values)


class TestSiteCrawler:

    @pytest.mark.asyncio
    async def test_crawls_whole_site(self):
        crawler, fetched = _stub_crawler()
        progress = []

        result = await crawler.crawl(_request(), lambda d, p: progress.append((d, p)))

        assert sorted(p["url"] for p in result.pages) == [
            "https://example.com",
            "https://example.com/a",
            "https://example.com/b",
            "https://example.com/c",
        ]
        assert len(fetched) == 4
        assert [p for _, p in progress] == [1, 2, 3, 4]
        assert all(d >= p for d, p in progress)
        assert result.stats["pages_crawled"] == 4
        assert result.stats["domain"] == "example.com"
        assert any(i["type"] == "thin_content" for i in result.issues)

    @pytest.mark.asyncio
    async def test_max_pages(self):
        crawler, fetched = _stub_crawler()
        result = await crawler.crawl(_request(max_pages=2))
        assert len(result.pages) == 2
        assert len(fetched) == 2

    @pytest.mark.asyncio
    async def test_max_depth(self):
        crawler, _ = _stub_crawler()
        result = await crawler.crawl(_request(max_depth=1))
        assert "https://example.com/c" not in {p["url"] for p in result.pages}
        assert len(result.pages) == 3

    @pytest.mark.asyncio
    async def test_single_url(self):
        crawler, fetched = _stub_crawler(sitemap=["https://example.com/b"])
        result = await crawler.crawl(_request(crawl_single_url=True))
        assert [p["url"] for p in result.pages] == ["https://example.com"]
        assert fetched == ["https://example.com"]

    @pytest.mark.asyncio
    async def test_ignore_patterns(self):
        crawler, _ = _stub_crawler()
        result = await crawler.crawl(_request(ignore_patterns=("/c",)))
        assert "https://example.com/c" not in {p["url"] for p in result.pages}

    @pytest.mark.asyncio
    async def test_robots_disallow(self):
        robots = {"exists": True, "disallowed_paths": ["/b"], "allowed_paths": [], "sitemaps": []}
        crawler, fetched = _stub_crawler(robots=robots)
        result = await crawler.crawl(_request())
        assert "https://example.com/b" not in fetched
        assert result.stats["robots_found"] is True

    @pytest.mark.asyncio
    async def test_sitemap_seeds_frontier(self):
        crawler, fetched = _stub_crawler(sitemap=["https://example.com/c", "https://other.org/x"])
        await crawler.crawl(_request(max_depth=0))
        assert sorted(fetched) == ["https://example.com", "https://example.com/c"]
        assert "https://other.org/x" not in fetched

    @pytest.mark.asyncio
    async def test_progress_callback_error_aborts(self):
        crawler, _ = _stub_crawler()

        def stop(discovered, processed):
            raise RuntimeError("stop")

        with pytest.raises(RuntimeError):
            await crawler.crawl(_request(), stop)

    @pytest.mark.asyncio
    async def test_sitemap_index_is_followed(self):
        crawler = SiteCrawlerService()
        documents = {
            "https://example.com/sitemap.xml": (
                '<sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">'
                "<sitemap><loc>https://example.com/posts.xml</loc></sitemap>"
                "</sitemapindex>"
            ),
            "https://example.com/posts.xml": (
                '<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">'
                "<url><loc>https://example.com/post-1</loc></url>"
                "</urlset>"
            ),
        }

        async def get_text(session, url):
            return documents.get(url)

        crawler._get_text = get_text
        urls = await crawler.fetch_sitemap_urls(None, "https://example.com", [])
        assert urls == ["https://example.com/post-1"]
