from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

from boundscout.pipelines.audit import AuditLog, SliceRecord


def test_audit_log_summary_search_and_save(tmp_path: Path) -> None:
    audit = AuditLog()
    audit.add("api-call", "Whole-image detection")
    audit.add("api-response", "Whole-image detection", parse_method="xml", found=2)
    audit.add("error", "Slicing error for save_button", error="ValueError: bad crop")
    audit.add_slice(SliceRecord(reference_name="save_button", depth=0, x=10, y=20, width=30, height=40))

    summary = audit.summary()
    assert summary["total_entries"] == 4
    assert summary["api_calls"] == 1
    assert summary["errors"] == 1
    assert summary["slices"] == 1
    assert summary["by_kind"]["slice"] == 1

    assert [e.kind for e in audit.search("save_button")] == ["error", "slice"]
    assert len(audit.search("bad crop")) == 1
    assert len(audit.by_kind("api-response")) == 1

    now = datetime.now(timezone.utc)
    assert len(audit.between(now - timedelta(minutes=1), now + timedelta(minutes=1))) == 4
    assert audit.between(now + timedelta(minutes=1), now + timedelta(minutes=2)) == []

    out = tmp_path / "audit.json"
    audit.save(out)
    data = json.loads(out.read_text(encoding="utf-8"))
    assert data["summary"]["total_entries"] == 4
    assert data["slices"][0]["x"] == 10
    assert data["entries"][1]["data"] == {"parse_method": "xml", "found": 2}

    audit.clear()
    assert len(audit) == 0
    assert audit.slices == []
    assert audit.summary()["first"] is None
