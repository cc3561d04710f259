from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from privacy_advisor.scans.dedupe import find_reusable_scan
from privacy_advisor.scans.models import Scan
from privacy_advisor.scans.queue import Publisher, ScanJob, enqueue_scan_job
from privacy_advisor.scans.urls import normalize_url

logger = logging.getLogger(__name__)


def submit_scan(
    db: Session,
    raw_input: str,
    *,
    force: bool = False,
    request_id: str | None = None,
    publish: Publisher | None = None,
) -> tuple[Scan, bool]:
    """
    Entry point for the API layer. Returns `(scan, deduped)`: a fresh finished
    scan of the same input is reused unless `force` is set.
    Raises InvalidTargetError for input that is not a URL.
    """
    normalized = normalize_url(raw_input)

    if not force:
        cached = find_reusable_scan(db, normalized)
        if cached:
            logger.info("reusing scan %s for %s", cached.id, normalized)
            return cached, True

    scan = Scan(
        input=raw_input.strip(),
        normalized_input=normalized,
        target_type="url",
        status="queued",
        progress=0,
        request_id=request_id,
    )
    db.add(scan)
    db.commit()
    db.refresh(scan)

    job = ScanJob(scan_id=scan.id, url=normalized, normalized_input=normalized, request_id=request_id)
    enqueue_scan_job(db, job, publish=publish)
    return scan, False
