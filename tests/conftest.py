"""Pytest configuration for the privacy scan engine."""
import os

import httpx
import pytest

# no broker in tests; tasks run inline if anything publishes for real
os.environ.setdefault("CELERY_EAGER", "1")
os.environ.setdefault("CELERY_BROKER_URL", "memory://")

from privacy_advisor.db.init_db import init_db  # noqa: E402
from privacy_advisor.db.session import make_engine, make_session_factory  # noqa: E402
from privacy_advisor.scans.models import Scan  # noqa: E402

FULL_SECURITY_HEADERS = {
    "content-type": "text/html; charset=utf-8",
    "content-security-policy": "default-src 'self'",
    "referrer-policy": "strict-origin-when-cross-origin",
    "strict-transport-security": "max-age=63072000",
    "x-content-type-options": "nosniff",
    "permissions-policy": "geolocation=()",
}


class ListDeadLetters:
    """In-memory stand-in for DeadLetterChannel."""

    def __init__(self):
        self.entries = []

    def publish(self, entry: dict) -> None:
        self.entries.append(entry)

    def drain(self, limit: int = 100) -> list[dict]:
        out, self.entries = self.entries[:limit], self.entries[limit:]
        return out


class RecordingWriter:
    """EvidenceWriter stand-in that keeps rows in memory."""

    def __init__(self, scan_id: str = "test-scan"):
        self.scan_id = scan_id
        self.rows = []

    async def write(self, kind, severity, title, details=None):
        self.rows.append({"kind": kind, "severity": severity, "title": title, "details": dict(details or {})})
        return True

    def of_kind(self, kind):
        return [r for r in self.rows if r["kind"] == kind]


def html_site(pages: dict[str, str], headers: dict | None = None, calls: list | None = None):
    """MockTransport serving `pages` keyed by path; unknown paths are 404."""
    hdrs = headers or {"content-type": "text/html; charset=utf-8"}

    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(str(request.url))
        body = pages.get(request.url.path)
        if body is None:
            return httpx.Response(404, headers={"content-type": "text/html"}, text="not found")
        return httpx.Response(200, headers=hdrs, text=body)

    return httpx.MockTransport(handler)


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def db(session_factory):
    s = session_factory()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def make_scan(session_factory):
    def _make(url: str = "https://example.com/", **fields) -> str:
        s = session_factory()
        try:
            scan = Scan(input=url, normalized_input=url, status=fields.pop("status", "queued"), **fields)
            s.add(scan)
            s.commit()
            return scan.id
        finally:
            s.close()

    return _make


@pytest.fixture
def dead_letters():
    return ListDeadLetters()
