"""Per-page SEO checks and their aggregation into site-level issues."""

from collections import defaultdict
from typing import Any, Iterable

# check id -> (severity, category, message, fix)
CHECKS: dict[str, tuple[str, str, str, str]] = {
    "http_error": (
        "critical", "crawlability", "Page returns an error status",
        "Fix the page or remove links pointing to it.",
    ),
    "fetch_error": (
        "critical", "crawlability", "Page could not be fetched",
        "Check that the server responds and the URL is reachable.",
    ),
    "missing_title": (
        "critical", "meta", "Missing page title",
        "Add a unique, descriptive title tag.",
    ),
    "short_title": (
        "warning", "meta", "Page title too short",
        "Create a title that is 50-60 characters long and includes your primary keyword.",
    ),
    "long_title": (
        "warning", "meta", "Page title too long",
        "Keep titles under 60 characters so they are not truncated in search results.",
    ),
    "missing_meta_description": (
        "warning", "meta", "Missing meta description",
        "Add a descriptive meta description tag between 120-155 characters long.",
    ),
    "missing_h1": (
        "critical", "content", "Missing H1 heading",
        "Add a single H1 heading containing your primary keyword to the page.",
    ),
    "multiple_h1": (
        "warning", "content", "Multiple H1 headings",
        "Keep exactly one H1 per page and use H2-H6 for sub-sections.",
    ),
    "images_missing_alt": (
        "warning", "content", "Images missing alt text",
        "Add descriptive alt text to all images that conveys their purpose and content.",
    ),
    "missing_viewport": (
        "critical", "technical", "Mobile viewport not set",
        'Add <meta name="viewport" content="width=device-width, initial-scale=1">.',
    ),
    "thin_content": (
        "warning", "content", "Low word count (<300 words)",
        "Expand the content to at least 300 words while maintaining quality and relevance.",
    ),
    "not_https": (
        "critical", "security", "HTTP instead of HTTPS",
        "Install an SSL certificate and redirect HTTP traffic to HTTPS.",
    ),
    "noindex": (
        "info", "technical", "Page is excluded from indexing (noindex)",
        "Remove the noindex directive if the page should appear in search results.",
    ),
    "no_structured_data": (
        "info", "technical", "No structured data implemented",
        "Implement relevant Schema.org markup for your content type.",
    ),
    "duplicate_title": (
        "warning", "content", "Duplicate title across pages",
        "Write unique title tags for each page.",
    ),
}

_SEVERITY_ORDER = {"critical": 0, "warning": 1, "info": 2}


def page_findings(page: dict[str, Any]) -> list[str]:
    """Return the ids of every check that *page* fails."""
    url = page.get("url", "")
    if page.get("error"):
        return ["fetch_error"]
    status = page.get("status_code") or 0
    if status >= 400:
        return ["http_error"]

    found: list[str] = []
    if url.startswith("http://"):
        found.append("not_https")
    if not page.get("is_html", False):
        return found

    title = page.get("title", "")
    if not title:
        found.append("missing_title")
    elif len(title) < 30:
        found.append("short_title")
    elif len(title) > 60:
        found.append("long_title")
    if not page.get("meta_description"):
        found.append("missing_meta_description")

    h1_count = len(page.get("h1_tags", []))
    if h1_count == 0:
        found.append("missing_h1")
    elif h1_count > 1:
        found.append("multiple_h1")

    if any(not img.get("alt") for img in page.get("images", [])):
        found.append("images_missing_alt")
    if not page.get("has_viewport", True):
        found.append("missing_viewport")
    if page.get("word_count", 0) < 300:
        found.append("thin_content")
    if "noindex" in page.get("robots_meta", "").lower():
        found.append("noindex")
    if not page.get("structured_data_types"):
        found.append("no_structured_data")
    return found


def compile_issues(pages: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    """Group per-page findings into one issue per check with affected URLs."""
    affected: dict[str, list[str]] = defaultdict(list)
    titles: dict[str, list[str]] = defaultdict(list)

    for page in pages:
        url = page.get("url", "")
        for check in page_findings(page):
            affected[check].append(url)
        if page.get("title"):
            titles[page["title"].strip().lower()].append(url)

    for urls in titles.values():
        if len(urls) > 1:
            affected["duplicate_title"].extend(urls)

    issues: list[dict[str, Any]] = []
    for check, urls in affected.items():
        severity, category, message, fix = CHECKS[check]
        issues.append({
            "type": check,
            "severity": severity,
            "category": category,
            "message": message,
            "fix": fix,
            "affected_urls": sorted(set(urls)),
        })
    issues.sort(key=lambda i: (_SEVERITY_ORDER[i["severity"]], -len(i["affected_urls"]), i["type"]))
    return issues
