"""HTML, robots.txt and sitemap parsing helpers for the site crawler."""

import fnmatch
import json
import logging
import re
from typing import Any, Iterable
from urllib.parse import urljoin, urlparse
from xml.etree import ElementTree as ET

from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)


def normalise_url(url: str) -> str:
    """Strip fragment, query and trailing slash for dedup."""
    parsed = urlparse(url)
    path = parsed.path.rstrip("/") or "/"
    return f"{parsed.scheme}://{parsed.netloc.lower()}{path}"


def extract_domain(url: str) -> str:
    return urlparse(url).netloc.lower()


def same_domain(url: str, domain: str) -> bool:
    try:
        return urlparse(url).netloc.lower().replace("www.", "") == domain.lower().replace("www.", "")
    except ValueError:
        return False


def base_url(url: str) -> str:
    p = urlparse(url)
    return f"{p.scheme}://{p.netloc}"


def matches_any(url: str, patterns: Iterable[str]) -> bool:
    """Glob-match *url* against patterns.

    Patterns starting with ``/`` are matched against the path
    (``/blog/*``); anything else against the full URL.
    """
    parsed = urlparse(url)
    for pattern in patterns:
        target = (parsed.path or "/") if pattern.startswith("/") else url
        if fnmatch.fnmatch(target, pattern):
            return True
    return False


def is_followable(url: str, follow_patterns: Iterable[str], ignore_patterns: Iterable[str]) -> bool:
    follow = list(follow_patterns)
    if matches_any(url, ignore_patterns):
        return False
    if follow and not matches_any(url, follow):
        return False
    return True


# ---------------------------------------------------------------------------
# HTML
# ---------------------------------------------------------------------------

def parse_page(url: str, final_url: str, status: int, html: str, domain: str, load_time: float = 0.0) -> dict[str, Any]:
    """Extract SEO signals from HTML content."""
    soup = BeautifulSoup(html, "html.parser")

    title_tag = soup.find("title")
    title = title_tag.get_text(strip=True) if title_tag else ""

    meta_desc = ""
    md_tag = soup.find("meta", attrs={"name": re.compile(r"^description$", re.I)})
    if md_tag:
        meta_desc = md_tag.get("content", "") or ""

    viewport = soup.find("meta", attrs={"name": re.compile(r"^viewport$", re.I)})

    robots_meta = ""
    rm_tag = soup.find("meta", attrs={"name": re.compile(r"^robots$", re.I)})
    if rm_tag:
        robots_meta = rm_tag.get("content", "") or ""

    canonical_tag = soup.find("link", rel="canonical")
    canonical_url = canonical_tag["href"] if canonical_tag and canonical_tag.get("href") else ""

    h1_tags = [h.get_text(strip=True) for h in soup.find_all("h1")]
    h2_tags = [h.get_text(strip=True) for h in soup.find_all("h2")]

    internal_links: list[str] = []
    external_links: list[str] = []
    for a_tag in soup.find_all("a", href=True):
        href = a_tag["href"].strip()
        if href.startswith(("#", "mailto:", "tel:", "javascript:")):
            continue
        abs_href = urljoin(final_url, href).split("#", 1)[0]
        if not abs_href.startswith(("http://", "https://")):
            continue
        if same_domain(abs_href, domain):
            internal_links.append(abs_href)
        else:
            external_links.append(abs_href)

    images: list[dict[str, str]] = []
    for img in soup.find_all("img"):
        src = img.get("src", "") or img.get("data-src", "")
        if src:
            images.append({"src": urljoin(final_url, src), "alt": (img.get("alt") or "").strip()})

    structured_data_types: list[str] = []
    for script_tag in soup.find_all("script", type="application/ld+json"):
        try:
            data = json.loads(script_tag.string or "{}")
        except ValueError:
            continue
        items = data if isinstance(data, list) else [data]
        for item in items:
            if isinstance(item, dict) and item.get("@type"):
                structured_data_types.append(str(item["@type"]))

    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    word_count = len(soup.get_text(separator=" ", strip=True).split())

    return {
        "url": url,
        "final_url": final_url,
        "status_code": status,
        "is_html": True,
        "title": title,
        "meta_description": meta_desc,
        "has_viewport": viewport is not None,
        "robots_meta": robots_meta,
        "canonical_url": canonical_url,
        "h1_tags": h1_tags,
        "h2_tags": h2_tags,
        "word_count": word_count,
        "internal_links": internal_links,
        "external_links": external_links,
        "images": images,
        "structured_data_types": structured_data_types,
        "load_time": load_time,
    }


# ---------------------------------------------------------------------------
# robots.txt
# ---------------------------------------------------------------------------

def parse_robots(text: str, user_agent: str) -> dict[str, Any]:
    """Parse robots.txt rules that apply to ``*`` or *user_agent*."""
    result: dict[str, Any] = {
        "exists": True,
        "allowed_paths": [],
        "disallowed_paths": [],
        "sitemaps": [],
        "crawl_delay": None,
    }
    agent_token = user_agent.split("/")[0].strip().lower()
    applies = False
    for raw_line in text.splitlines():
        line = raw_line.split("#")[0].strip()
        if not line or ":" not in line:
            continue
        key, value = line.split(":", 1)
        key = key.strip().lower()
        value = value.strip()
        if key == "user-agent":
            applies = value == "*" or value.lower() == agent_token
        elif key == "sitemap":
            if value:
                result["sitemaps"].append(value)
        elif not applies:
            continue
        elif key == "disallow" and value:
            result["disallowed_paths"].append(value)
        elif key == "allow" and value:
            result["allowed_paths"].append(value)
        elif key == "crawl-delay":
            try:
                result["crawl_delay"] = float(value)
            except ValueError:
                pass
    return result


def is_disallowed(url: str, robots: dict[str, Any]) -> bool:
    """Longest-prefix match between Allow and Disallow rules."""
    path = urlparse(url).path or "/"
    best_allow = max((len(p) for p in robots.get("allowed_paths", []) if path.startswith(p)), default=-1)
    best_disallow = max((len(p) for p in robots.get("disallowed_paths", []) if path.startswith(p)), default=-1)
    return best_disallow > best_allow


# ---------------------------------------------------------------------------
# Sitemaps
# ---------------------------------------------------------------------------

def _local(tag: str) -> str:
    return tag.split("}")[-1] if "}" in tag else tag


def parse_sitemap(xml_text: str) -> tuple[list[str], list[str]]:
    """Return ``(page_urls, child_sitemap_urls)`` from a sitemap document."""
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as exc:
        logger.warning("Sitemap parse error: %s", exc)
        return [], []

    pages: list[str] = []
    children: list[str] = []
    is_index = _local(root.tag) == "sitemapindex"
    for el in root.iter():
        if _local(el.tag) == "loc" and el.text:
            loc = el.text.strip()
            if is_index:
                children.append(loc)
            else:
                pages.append(loc)
    return pages, children
