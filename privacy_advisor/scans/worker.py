# privacy_advisor/scans/worker.py

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

import httpx
from sqlalchemy.orm import Session, sessionmaker

from privacy_advisor.core.config import SCAN_FIXTURES_DIR, JobOptions, ScanLimits
from privacy_advisor.core.errors import (
    BlockedTargetError,
    InvalidTargetError,
    JobStalledError,
    JobTimeoutError,
    ScanNotFoundError,
)
from privacy_advisor.db.session import SessionLocal
from privacy_advisor.lists.loader import load_lists
from privacy_advisor.scans.classifier import EvidenceClassifier
from privacy_advisor.scans.crawler import crawl
from privacy_advisor.scans.models import Scan
from privacy_advisor.scans.queue import DeadLetterChannel, ScanJob, dead_letter_entry, get_dead_letter_channel
from privacy_advisor.scans.repository import EvidenceWriter, delete_evidence, replace_issues
from privacy_advisor.scans.scoring import ScanResult, compile_report
from privacy_advisor.ssrf.guard import validate_url_target
from privacy_advisor.ssrf.http import FixtureTransport, make_client

logger = logging.getLogger(__name__)

# failures that another attempt cannot fix
NON_RETRYABLE = (BlockedTargetError, InvalidTargetError, ScanNotFoundError, JobStalledError)

BLOCKED_SUMMARY = "Scan blocked: target host is not allowed (security policy)"
TIMEOUT_SUMMARY = "Scan timed out"
FAILED_SUMMARY = "Scan failed"

# crawl share of the progress bar; scoring takes the rest
CRAWL_PROGRESS_MAX = 90


def _now():
    return datetime.now(timezone.utc)


def _default_transport() -> httpx.AsyncBaseTransport | None:
    if SCAN_FIXTURES_DIR:
        return FixtureTransport(SCAN_FIXTURES_DIR)
    return None


def _load_lists(session_factory: sessionmaker):
    db = session_factory()
    try:
        return load_lists(db)
    finally:
        db.close()


def _set_progress(session_factory: sessionmaker, scan_id: str, progress: int) -> None:
    db = session_factory()
    try:
        db.query(Scan).filter(Scan.id == scan_id, Scan.status == "running").update(
            {Scan.progress: progress}, synchronize_session=False
        )
        db.commit()
    finally:
        db.close()


async def run_scan(
    session_factory: sessionmaker,
    scan_id: str,
    url: str,
    *,
    limits: ScanLimits | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ScanResult:
    """
    Full pipeline for one scan: host check, lists, crawl + classify, scoring.
    Raises BlockedTargetError before any network access when the target is not allowed.
    """
    limits = limits or ScanLimits()
    validate_url_target(url, resolve_dns=limits.resolve_dns)

    lists = await asyncio.to_thread(_load_lists, session_factory)
    writer = EvidenceWriter(session_factory, scan_id)
    classifier = EvidenceClassifier(writer, lists, url)
    pages_done = 0

    async def on_page(page, soup, first):
        nonlocal pages_done
        await classifier.classify(page, soup, first=first)
        pages_done += 1
        progress = min(CRAWL_PROGRESS_MAX, int(pages_done * CRAWL_PROGRESS_MAX / max(1, limits.page_limit)))
        await asyncio.to_thread(_set_progress, session_factory, scan_id, progress)

    async with make_client(timeout=limits.request_timeout_sec, transport=transport or _default_transport()) as client:
        crawled = await crawl(url, client, on_page, limits=limits)

    logger.info(
        "crawled scan %s: %d visited, %d failed, %d evidence rows",
        scan_id, len(crawled.visited), len(crawled.failed), writer.written,
    )
    return await asyncio.to_thread(
        compile_report,
        session_factory,
        scan_id,
        extra_meta={"crawl": crawled.metrics, "lists": lists.source},
    )


async def _run_with_timeout(session_factory, job: ScanJob, *, limits, options: JobOptions, transport) -> ScanResult:
    timeout = options.timeout_ms / 1000
    try:
        return await asyncio.wait_for(
            run_scan(session_factory, job.scan_id, job.url, limits=limits, transport=transport),
            timeout=timeout,
        )
    except asyncio.TimeoutError as e:
        raise JobTimeoutError(f"Scan exceeded {options.timeout_ms} ms") from e


def _begin_attempt(db: Session, job: ScanJob, options: JobOptions) -> bool:
    """
    Claim the scan for this attempt. Returns False when it already finished
    (duplicate delivery). A scan still `running` means the previous holder
    lost its lease.
    """
    scan = db.get(Scan, job.scan_id)
    if not scan:
        raise ScanNotFoundError(f"Scan {job.scan_id} not found")

    if scan.status == "done":
        return False

    if scan.status == "running":
        scan.stall_count = (scan.stall_count or 0) + 1
        if scan.stall_count > options.max_stalled_count:
            db.commit()
            raise JobStalledError(f"Scan {job.scan_id} stalled {scan.stall_count} times")
        logger.warning("scan %s reclaimed after stall (%d/%d)", job.scan_id, scan.stall_count, options.max_stalled_count)

    scan.status = "running"
    scan.started_at = _now()
    scan.finished_at = None
    scan.progress = 0
    scan.score = None
    scan.label = None
    scan.summary = None

    # evidence from an earlier attempt would be counted twice
    removed = delete_evidence(db, scan.id)
    db.commit()
    if removed:
        logger.info("cleared %d evidence rows from previous attempt of scan %s", removed, scan.id)
    return True


def _finish_scan(db: Session, scan_id: str) -> None:
    s = db.query(Scan).filter(Scan.id == scan_id).first()
    if not s:
        return
    s.status = "done"
    s.progress = 100
    s.finished_at = _now()
    db.commit()


def failure_summary(err: Exception) -> str:
    if isinstance(err, BlockedTargetError):
        return BLOCKED_SUMMARY
    if isinstance(err, JobTimeoutError):
        return TIMEOUT_SUMMARY
    return FAILED_SUMMARY


def _fail_scan(db: Session, scan_id: str, err: Exception) -> None:
    s = db.query(Scan).filter(Scan.id == scan_id).first()
    if not s:
        return
    s.status = "error"
    s.summary = failure_summary(err)
    # a report committed just before a timeout must not outlive the failure
    s.score = None
    s.label = None
    replace_issues(db, scan_id, [])
    s.finished_at = _now()
    db.commit()


def _with_session(session_factory: sessionmaker, fn, *args):
    db = session_factory()
    try:
        return fn(db, *args)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def process_scan_job(
    job: ScanJob,
    *,
    attempt: int = 1,
    options: JobOptions | None = None,
    limits: ScanLimits | None = None,
    session_factory: sessionmaker | None = None,
    dead_letters: DeadLetterChannel | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict:
    """
    One delivery of a scan job. Records the outcome on the scan row; on failure
    the error is re-raised so the queue decides about the next attempt.
    The final attempt (and any non-retryable failure) goes to the dead-letter channel.
    """
    options = options or JobOptions()
    session_factory = session_factory or SessionLocal
    logger.info("scan %s attempt %d/%d request_id=%s", job.scan_id, attempt, options.attempts, job.request_id)

    try:
        if not _with_session(session_factory, _begin_attempt, job, options):
            logger.info("scan %s already done, skipping duplicate delivery", job.scan_id)
            return {"ok": True, "scan_id": job.scan_id, "skipped": True}

        result = asyncio.run(
            _run_with_timeout(session_factory, job, limits=limits, options=options, transport=transport)
        )
        _with_session(session_factory, _finish_scan, job.scan_id)
    except Exception as e:
        is_timeout = isinstance(e, JobTimeoutError)
        final = attempt >= options.attempts or isinstance(e, NON_RETRYABLE)
        _with_session(session_factory, _fail_scan, job.scan_id, e)

        if final:
            logger.error("scan %s failed for good on attempt %d: %s", job.scan_id, attempt, e, exc_info=True)
            channel = dead_letters or get_dead_letter_channel()
            channel.publish(dead_letter_entry(job, str(e) or type(e).__name__, is_timeout=is_timeout))
        else:
            logger.warning("scan %s attempt %d failed, will retry: %s", job.scan_id, attempt, e)
        raise

    logger.info("scan %s done: %s (%s)", job.scan_id, result.score, result.label)
    return {"ok": True, "scan_id": job.scan_id, "score": result.score, "label": result.label}
