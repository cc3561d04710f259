from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import desc
from sqlalchemy.orm import Session

from privacy_advisor.core.config import CACHE_TTL_MS
from privacy_advisor.scans.models import Scan


def find_reusable_scan(
    db: Session,
    normalized_input: str,
    *,
    ttl_ms: int = CACHE_TTL_MS,
    now: datetime | None = None,
) -> Scan | None:
    """
    Most recent finished scan for the same input inside the freshness window.
    No locking: two concurrent misses may both enqueue (accepted).
    """
    now = now or datetime.now(timezone.utc)
    since = now - timedelta(milliseconds=ttl_ms)
    return (
        db.query(Scan)
        .filter(
            Scan.normalized_input == normalized_input,
            Scan.status == "done",
            Scan.finished_at.isnot(None),
            Scan.finished_at >= since,
        )
        .order_by(desc(Scan.finished_at))
        .first()
    )
