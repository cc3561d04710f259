from __future__ import annotations

from datetime import datetime, timezone, timedelta
from sqlalchemy.orm import Session

from privacy_advisor.core.config import JobOptions
from privacy_advisor.scans.models import Scan
from privacy_advisor.scans.worker import FAILED_SUMMARY, TIMEOUT_SUMMARY


def running_ttl_seconds(options: JobOptions | None = None) -> float:
    """Longest a healthy job can stay `running`: every allowed lease plus the job timeout."""
    options = options or JobOptions()
    return (options.lock_duration_ms * (options.max_stalled_count + 1) + options.timeout_ms) / 1000


def _as_utc(dt: datetime) -> datetime:
    # SQLite returns naive datetimes -> treat as UTC
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def auto_cleanup_scans(
    db: Session,
    queued_ttl_minutes: int = 30,
    running_ttl_sec: float | None = None,
    now: datetime | None = None,
) -> dict:
    """
    - Mark stale queued scans as error (queued + no started_at + too old)
    - Mark stale running scans as error (running + started_at older than all leases + timeout)
    """

    now = now or datetime.now(timezone.utc)
    running_ttl = running_ttl_sec if running_ttl_sec is not None else running_ttl_seconds()
    queued_cutoff = now - timedelta(minutes=queued_ttl_minutes)
    running_cutoff = now - timedelta(seconds=running_ttl)

    fixed_queued = 0
    fixed_running = 0

    # A) queued stale
    queued = (
        db.query(Scan)
        .filter(Scan.status == "queued")
        .filter(Scan.started_at.is_(None))
        .all()
    )

    for s in queued:
        if s.created_at and _as_utc(s.created_at) <= queued_cutoff:
            s.status = "error"
            s.summary = FAILED_SUMMARY
            s.finished_at = now
            fixed_queued += 1

    # B) running stale
    running = (
        db.query(Scan)
        .filter(Scan.status == "running")
        .filter(Scan.started_at.isnot(None))
        .all()
    )

    for s in running:
        if _as_utc(s.started_at) <= running_cutoff:
            s.status = "error"
            s.summary = TIMEOUT_SUMMARY
            s.finished_at = now
            fixed_running += 1

    if fixed_queued or fixed_running:
        db.commit()

    return {
        "fixed_queued": fixed_queued,
        "fixed_running": fixed_running,
        "queued_ttl_minutes": queued_ttl_minutes,
        "running_ttl_seconds": running_ttl,
    }
