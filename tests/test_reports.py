"""Tests for report rendering and export."""

import json

import pytest

from site_audit.errors import InvalidOptions
from site_audit.reports import render_report, write_report


@pytest.fixture()
def completed_audit(store, project):
    from site_audit.options import AuditOptions

    audit = store.create_audit("p1", "https://example.com", AuditOptions())
    urls = [f"https://example.com/page-{i}" for i in range(12)]
    issues = [
        {"type": "missing_h1", "severity": "critical", "message": "Missing H1 <heading>", "affected_urls": urls},
    ]
    store.mark_in_progress(audit.id, 10)
    store.complete_audit(audit.id, [{"url": u} for u in urls], issues)
    return store.get_audit(audit.id)


class TestRenderReport:

    def test_html(self, completed_audit):
        html = render_report(completed_audit, "html")
        assert html.startswith("<!DOCTYPE html>")
        assert "Missing H1 &lt;heading&gt;" in html
        assert "... and 2 more" in html

    def test_json(self, completed_audit):
        data = json.loads(render_report(completed_audit, "JSON"))
        assert data["audit_id"] == completed_audit.id
        assert data["status"] == "COMPLETED"
        assert data["issues_summary"]["critical"] == 1
        assert len(data["pages"]) == 12

    def test_unknown_format(self, completed_audit):
        with pytest.raises(InvalidOptions):
            render_report(completed_audit, "pdf")

    def test_write_report(self, completed_audit, tmp_path):
        path = write_report("{}", str(tmp_path / "out"), completed_audit.id, "json")
        assert path.endswith(f"audit_{completed_audit.id}.json")
        assert (tmp_path / "out" / f"audit_{completed_audit.id}.json").read_text(encoding="utf-8") == "{}"
