import asyncio
import time
from pathlib import Path

import httpx
import pytest

from conftest import FULL_SECURITY_HEADERS, html_site
from privacy_advisor.core.config import JobOptions, ScanLimits
from privacy_advisor.core.errors import BlockedTargetError, JobStalledError, JobTimeoutError, ScanNotFoundError
from privacy_advisor.scans import worker
from privacy_advisor.scans.evidence_models import Evidence
from privacy_advisor.scans.models import Scan
from privacy_advisor.scans.queue import ScanJob
from privacy_advisor.scans.report import load_report
from privacy_advisor.scans.repository import list_evidence, list_issues
from privacy_advisor.scans.scoring import compile_report
from privacy_advisor.scans.worker import BLOCKED_SUMMARY, FAILED_SUMMARY, TIMEOUT_SUMMARY, process_scan_job
from privacy_advisor.ssrf.http import FixtureTransport

LIMITS = ScanLimits(page_limit=5, time_budget_sec=5, request_timeout_sec=2)
OPTIONS = JobOptions(attempts=3, timeout_ms=5000, max_stalled_count=1)


def _job(scan_id, url="https://example.com/"):
    return ScanJob(scan_id=scan_id, url=url, normalized_input=url, request_id="req-test")


def _run(session_factory, scan_id, transport, dead_letters, *, url="https://example.com/", attempt=1, options=OPTIONS):
    return process_scan_job(
        _job(scan_id, url),
        attempt=attempt,
        options=options,
        limits=LIMITS,
        session_factory=session_factory,
        dead_letters=dead_letters,
        transport=transport,
    )


def _scan_and_evidence(session_factory, scan_id):
    db = session_factory()
    try:
        return db.get(Scan, scan_id), list_evidence(db, scan_id)
    finally:
        db.close()


def _kinds(evidence, kind):
    return [e for e in evidence if e.kind == kind]


def test_clean_site_end_to_end(session_factory, make_scan, dead_letters):
    scan_id = make_scan()
    transport = html_site(
        {"/": '<footer><a href="/privacy">Privacy policy</a></footer>', "/privacy": "<p>We respect you.</p>"},
        headers=FULL_SECURITY_HEADERS,
    )

    out = _run(session_factory, scan_id, transport, dead_letters)
    assert out["ok"] is True

    scan, evidence = _scan_and_evidence(session_factory, scan_id)
    assert scan.status == "done"
    assert scan.progress == 100
    assert scan.finished_at is not None
    assert _kinds(evidence, "tracker") == []
    assert _kinds(evidence, "header") == []
    assert scan.meta["data_sharing"]["level"] == "None"
    assert scan.meta["crawl"]["visited"] == 2
    assert scan.score >= 80
    assert scan.label == "Safe"
    assert dead_letters.entries == []


def test_tracker_site_end_to_end(session_factory, make_scan, dead_letters):
    scan_id = make_scan()
    transport = html_site({"/": '<script src="https://www.google-analytics.com/analytics.js"></script>'})

    _run(session_factory, scan_id, transport, dead_letters)

    scan, evidence = _scan_and_evidence(session_factory, scan_id)
    assert scan.status == "done"
    [tracker] = _kinds(evidence, "tracker")
    assert tracker.details["domain"] == "google-analytics.com"
    assert len(_kinds(evidence, "header")) == 5
    assert scan.meta["data_sharing"]["level"] in ("Low", "Medium", "High")
    assert scan.label != "Safe"

    db = session_factory()
    try:
        report = load_report(db, scan_id)
    finally:
        db.close()
    assert report["scan"]["status"] == "done"
    assert report["meta"]["domain"] == "example.com"
    assert report["top_fixes"][0]["key"] == "tracking.trackers"


def test_loopback_target_never_fetches(session_factory, make_scan, dead_letters):
    url = "http://127.0.0.1/"
    scan_id = make_scan(url)
    calls = []
    transport = html_site({"/": "<p>internal</p>"}, calls=calls)

    with pytest.raises(BlockedTargetError):
        _run(session_factory, scan_id, transport, dead_letters, url=url)

    scan, evidence = _scan_and_evidence(session_factory, scan_id)
    assert calls == []
    assert scan.status == "error"
    assert scan.summary == BLOCKED_SUMMARY
    assert evidence == []
    # not retryable, so dead-lettered on the first attempt
    [entry] = dead_letters.entries
    assert entry["scanId"] == scan_id
    assert entry["isTimeout"] is False


def test_numeric_loopback_alias_never_fetches(session_factory, make_scan, dead_letters):
    url = "http://2130706433/"
    scan_id = make_scan(url)
    calls = []

    with pytest.raises(BlockedTargetError):
        _run(session_factory, scan_id, html_site({"/": "<p>internal</p>"}, calls=calls), dead_letters, url=url)

    scan, evidence = _scan_and_evidence(session_factory, scan_id)
    assert calls == []
    assert scan.summary == BLOCKED_SUMMARY
    assert evidence == []


def _slow_transport():
    async def handler(request):
        await asyncio.sleep(2)
        return httpx.Response(200, headers={"content-type": "text/html"}, text="<p>late</p>")

    return httpx.MockTransport(handler)


def test_timeout_on_early_attempt_is_retried_not_dead_lettered(session_factory, make_scan, dead_letters):
    scan_id = make_scan()
    options = JobOptions(attempts=3, timeout_ms=100)

    with pytest.raises(JobTimeoutError):
        _run(session_factory, scan_id, _slow_transport(), dead_letters, attempt=1, options=options)

    scan, _ = _scan_and_evidence(session_factory, scan_id)
    assert scan.status == "error"
    assert scan.summary == TIMEOUT_SUMMARY
    assert dead_letters.entries == []


def test_final_attempt_dead_letters_with_timeout_flag(session_factory, make_scan, dead_letters):
    scan_id = make_scan()
    options = JobOptions(attempts=3, timeout_ms=100)

    with pytest.raises(JobTimeoutError):
        _run(session_factory, scan_id, _slow_transport(), dead_letters, attempt=3, options=options)

    [entry] = dead_letters.entries
    assert entry["scanId"] == scan_id
    assert entry["url"] == "https://example.com/"
    assert entry["requestId"] == "req-test"
    assert entry["isTimeout"] is True
    assert entry["failedAt"]


def test_generic_failure_summary(session_factory, make_scan, dead_letters, monkeypatch):
    def broken_lists(session_factory):
        raise RuntimeError("lists unavailable")

    monkeypatch.setattr(worker, "_load_lists", broken_lists)
    scan_id = make_scan()

    with pytest.raises(RuntimeError):
        _run(session_factory, scan_id, html_site({"/": ""}), dead_letters, attempt=3)

    scan, _ = _scan_and_evidence(session_factory, scan_id)
    assert scan.summary == FAILED_SUMMARY
    assert dead_letters.entries[0]["error"] == "lists unavailable"


def test_retry_clears_previous_evidence(session_factory, make_scan, dead_letters):
    scan_id = make_scan(status="error")
    db = session_factory()
    try:
        db.add(Evidence(scan_id=scan_id, kind="tracker", severity=3, title="stale", details={"domain": "stale.example"}))
        db.commit()
    finally:
        db.close()

    _run(session_factory, scan_id, html_site({"/": ""}, headers=FULL_SECURITY_HEADERS), dead_letters, attempt=2)

    scan, evidence = _scan_and_evidence(session_factory, scan_id)
    assert scan.status == "done"
    assert _kinds(evidence, "tracker") == []


def test_stalled_job_is_reclaimed_once(session_factory, make_scan, dead_letters):
    scan_id = make_scan(status="running")

    _run(session_factory, scan_id, html_site({"/": ""}, headers=FULL_SECURITY_HEADERS), dead_letters)

    scan, _ = _scan_and_evidence(session_factory, scan_id)
    assert scan.status == "done"
    assert scan.stall_count == 1


def test_stalled_too_often_fails(session_factory, make_scan, dead_letters):
    scan_id = make_scan(status="running", stall_count=1)
    calls = []

    with pytest.raises(JobStalledError):
        _run(session_factory, scan_id, html_site({"/": ""}, calls=calls), dead_letters)

    scan, _ = _scan_and_evidence(session_factory, scan_id)
    assert scan.status == "error"
    assert scan.stall_count == 2
    assert calls == []
    assert len(dead_letters.entries) == 1


def test_duplicate_delivery_of_finished_scan_is_skipped(session_factory, make_scan, dead_letters):
    scan_id = make_scan(status="done", score=91, label="Safe")
    calls = []

    out = _run(session_factory, scan_id, html_site({"/": ""}, calls=calls), dead_letters)

    assert out["skipped"] is True
    assert calls == []
    scan, _ = _scan_and_evidence(session_factory, scan_id)
    assert scan.score == 91


def test_missing_scan_is_dead_lettered(session_factory, dead_letters):
    with pytest.raises(ScanNotFoundError):
        _run(session_factory, "does-not-exist", html_site({"/": ""}), dead_letters)
    assert dead_letters.entries[0]["scanId"] == "does-not-exist"


def test_fixture_site_end_to_end(session_factory, make_scan, dead_letters):
    url = "https://tracky.test/"
    scan_id = make_scan(url)
    offline = httpx.MockTransport(lambda request: httpx.Response(599))
    transport = FixtureTransport(Path(__file__).parent / "fixtures", fallback=offline)

    _run(session_factory, scan_id, transport, dead_letters, url=url)

    scan, evidence = _scan_and_evidence(session_factory, scan_id)
    assert scan.status == "done"
    assert scan.meta["crawl"]["visited"] == 3
    assert set(scan.meta["tracker_domains"]) == {"googletagmanager.com", "fpjs.io", "facebook.net"}
    assert scan.meta["fingerprint_detected"] is True
    assert scan.meta["policy_found"] is True
    assert scan.meta["cookie_issues"] == 1
    assert scan.meta["data_sharing"]["level"] == "High"
    assert len(_kinds(evidence, "header")) == 4 * 3
    assert scan.label in ("Caution", "High Risk")


def test_timeout_while_scoring_leaves_no_report(session_factory, make_scan, dead_letters, monkeypatch):
    def slow_compile(*args, **kwargs):
        result = compile_report(*args, **kwargs)
        time.sleep(1.5)
        return result

    monkeypatch.setattr(worker, "compile_report", slow_compile)
    scan_id = make_scan()
    transport = html_site({"/": '<script src="https://www.google-analytics.com/analytics.js"></script>'})

    with pytest.raises(JobTimeoutError):
        _run(session_factory, scan_id, transport, dead_letters, options=JobOptions(attempts=3, timeout_ms=1000))

    scan, _ = _scan_and_evidence(session_factory, scan_id)
    assert scan.status == "error"
    assert scan.summary == TIMEOUT_SUMMARY
    assert scan.score is None
    assert scan.label is None
    db = session_factory()
    try:
        assert list_issues(db, scan_id) == []
    finally:
        db.close()
