"""Audit report rendering (HTML and JSON) and export."""

import html
import json
import logging
import os
from typing import Any

from site_audit.errors import InvalidOptions
from site_audit.models import SiteAudit

logger = logging.getLogger(__name__)

SEVERITY_COLORS = {"critical": "#ef4444", "warning": "#f97316", "info": "#3b82f6"}


def audit_to_dict(audit: SiteAudit) -> dict[str, Any]:
    """Serialisable snapshot of an audit and its results."""
    results = audit.page_results or {}
    return {
        "audit_id": audit.id,
        "project_id": audit.project_id,
        "site_url": audit.site_url,
        "status": audit.status,
        "started_at": audit.started_at.isoformat() if audit.started_at else None,
        "completed_at": audit.completed_at.isoformat() if audit.completed_at else None,
        "total_pages": audit.total_pages or 0,
        "issues_summary": audit.issues_summary or {},
        "options": audit.options or {},
        "issues": results.get("issues", []),
        "pages": results.get("pages", []),
    }


def render_report(audit: SiteAudit, fmt: str = "html") -> str:
    """Render *audit* as ``html`` or ``json``."""
    fmt = (fmt or "").lower()
    data = audit_to_dict(audit)
    if fmt == "html":
        return render_html(data)
    if fmt == "json":
        return json.dumps(data, indent=2, default=str)
    raise InvalidOptions(f"Unsupported report format: {fmt!r}")


def render_html(d: dict[str, Any]) -> str:
    """Produce a self-contained HTML audit report."""
    esc = html.escape
    summary = d.get("issues_summary", {})
    issues = d.get("issues", [])

    issue_rows = ""
    for iss in issues:
        sev = str(iss.get("severity", "info"))
        urls = iss.get("affected_urls", [])
        url_items = "".join("<li>{u}</li>".format(u=esc(u)) for u in urls[:10])
        if len(urls) > 10:
            url_items += "<li>... and {n} more</li>".format(n=len(urls) - 10)
        issue_rows += (
            "<tr>"
            "<td style=\"padding:6px;\"><span style=\"color:{sc};font-weight:bold;\">{sev}</span></td>"
            "<td style=\"padding:6px;\">{cat}</td>"
            "<td style=\"padding:6px;\">{msg}</td>"
            "<td style=\"padding:6px;\">{fix}</td>"
            "<td style=\"padding:6px;\"><ul style=\"margin:0;padding-left:16px;\">{urls}</ul></td>"
            "</tr>"
        ).format(
            sc=SEVERITY_COLORS.get(sev.lower(), "#6b7280"),
            sev=esc(sev.upper()),
            cat=esc(str(iss.get("category", ""))),
            msg=esc(str(iss.get("message", ""))),
            fix=esc(str(iss.get("fix", ""))),
            urls=url_items,
        )

    cards = ""
    for label, key, color in (
        ("Pages Crawled", None, "#1e293b"),
        ("Critical", "critical", SEVERITY_COLORS["critical"]),
        ("Warnings", "warning", SEVERITY_COLORS["warning"]),
        ("Info", "info", SEVERITY_COLORS["info"]),
    ):
        value = d.get("total_pages", 0) if key is None else summary.get(key, 0)
        cards += (
            "<div style=\"background:white;padding:24px;border-radius:12px;text-align:center;"
            "border:1px solid #e2e8f0;flex:1;\">"
            "<div style=\"font-size:3rem;font-weight:bold;color:{color};\">{value}</div>"
            "<div>{label}</div></div>"
        ).format(color=color, value=value, label=label)

    return (
        "<!DOCTYPE html><html lang=\"en\"><head><meta charset=\"UTF-8\">"
        "<meta name=\"viewport\" content=\"width=device-width,initial-scale=1.0\">"
        "<title>Site Audit - {site}</title>"
        "<style>body{{font-family:system-ui,sans-serif;max-width:1000px;margin:0 auto;padding:20px;"
        "background:#f8fafc;color:#1e293b;}}table{{width:100%;border-collapse:collapse;}}"
        "th{{text-align:left;padding:8px;border-bottom:2px solid #e2e8f0;}}"
        "tr:nth-child(even){{background:#f1f5f9;}}</style></head><body>"
        "<h1>Site Audit Report</h1>"
        "<p><strong>Site:</strong> {site} | <strong>Completed:</strong> {ts}</p>"
        "<div style=\"display:flex;gap:20px;margin:20px 0;\">{cards}</div>"
        "<h2>Issues ({ni})</h2>"
        "<table><tr><th>Severity</th><th>Category</th><th>Issue</th><th>Fix</th><th>Affected URLs</th></tr>"
        "{issue_rows}</table>"
        "</body></html>"
    ).format(
        site=esc(d.get("site_url", "")),
        ts=esc(d.get("completed_at") or ""),
        cards=cards,
        ni=summary.get("total", len(issues)),
        issue_rows=issue_rows,
    )


def write_report(content: str, reports_dir: str, audit_id: str, fmt: str) -> str:
    """Write a rendered report under *reports_dir*; returns the file path."""
    os.makedirs(reports_dir, exist_ok=True)
    filepath = os.path.join(reports_dir, f"audit_{audit_id}.{fmt}")
    with open(filepath, "w", encoding="utf-8") as fh:
        fh.write(content)
    logger.info("Audit report exported to %s", filepath)
    return filepath
