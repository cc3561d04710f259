import pytest

from privacy_advisor.core.errors import ScanNotFoundError
from privacy_advisor.scans.evidence_models import Evidence
from privacy_advisor.scans.report import load_report
from privacy_advisor.scans.scoring import compile_report


def test_report_payload(session_factory, make_scan, db):
    scan_id = make_scan("https://shop.example.co.uk/", status="running")
    db.add_all([
        Evidence(scan_id=scan_id, kind="cookie", severity=2, title="c", details={"name": "sid"}),
        Evidence(scan_id=scan_id, kind="thirdparty", severity=2, title="3p", details={"domain": "cdn.other.net"}),
        Evidence(scan_id=scan_id, kind="policy", severity=1, title="p", details={"href": "/privacy"}),
    ])
    db.commit()
    compile_report(session_factory, scan_id)

    db.expire_all()
    report = load_report(db, scan_id)
    assert set(report) == {"scan", "issues", "evidence", "top_fixes", "meta"}
    assert report["meta"] == {"data_sharing": "Low", "domain": "example.co.uk"}
    assert len(report["evidence"]) == 3
    assert [i["key"] for i in report["issues"]] == ["security.cookies"]
    assert report["top_fixes"][0]["key"] == "security.cookies"
    assert report["scan"]["score"] is not None


def test_missing_scan(db):
    with pytest.raises(ScanNotFoundError):
        load_report(db, "nope")
