from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

from kombu import Connection
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from privacy_advisor.core.config import DEAD_LETTER_QUEUE, SCAN_QUEUE
from privacy_advisor.scans.models import Scan

logger = logging.getLogger(__name__)


class ScanJob(BaseModel):
    """Payload of one scan job (camelCase on the wire)."""

    model_config = ConfigDict(populate_by_name=True)

    scan_id: str = Field(alias="scanId")
    url: str
    normalized_input: str = Field(alias="normalizedInput")
    request_id: str | None = Field(default=None, alias="requestId")

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True)


Publisher = Callable[[ScanJob], None]


def publish_scan_job(job: ScanJob) -> None:
    # local import: tasks -> worker -> queue
    from privacy_advisor.scans.tasks import scan_site_task

    scan_site_task.apply_async(args=[job.to_payload()], task_id=job.scan_id, queue=SCAN_QUEUE)


def enqueue_scan_job(db: Session, job: ScanJob, *, publish: Publisher | None = None) -> bool:
    """
    Publish the job once per scan. The job id is the scan id and is claimed on
    the row first, so a repeated call is a no-op and returns False.
    """
    claimed = (
        db.query(Scan)
        .filter(Scan.id == job.scan_id, Scan.job_id.is_(None), Scan.status == "queued")
        .update({Scan.job_id: job.scan_id}, synchronize_session=False)
    )
    db.commit()
    if not claimed:
        logger.info("scan %s already enqueued, skipping", job.scan_id)
        return False

    try:
        (publish or publish_scan_job)(job)
    except Exception:
        # release the claim so the scan can be enqueued again
        db.query(Scan).filter(Scan.id == job.scan_id).update({Scan.job_id: None}, synchronize_session=False)
        db.commit()
        raise

    logger.info("enqueued scan %s request_id=%s", job.scan_id, job.request_id)
    return True


def dead_letter_entry(job: ScanJob, error: str, *, is_timeout: bool) -> dict:
    return {
        "scanId": job.scan_id,
        "url": job.url,
        "requestId": job.request_id,
        "error": error,
        "isTimeout": is_timeout,
        "failedAt": datetime.now(timezone.utc).isoformat(timespec="seconds"),
    }


class DeadLetterChannel:
    """Jobs that failed for good, kept on a plain kombu queue for inspection/requeue."""

    def __init__(self, connection_factory: Callable[[], Connection], queue_name: str = DEAD_LETTER_QUEUE):
        self.connection_factory = connection_factory
        self.queue_name = queue_name

    def publish(self, entry: dict) -> None:
        with self.connection_factory() as conn:
            q = conn.SimpleQueue(self.queue_name)
            try:
                q.put(entry)
            finally:
                q.close()

    def drain(self, limit: int = 100) -> list[dict]:
        out: list[dict] = []
        with self.connection_factory() as conn:
            q = conn.SimpleQueue(self.queue_name)
            try:
                while len(out) < limit:
                    try:
                        message = q.get(block=False)
                    except q.Empty:
                        break
                    out.append(message.payload)
                    message.ack()
            finally:
                q.close()
        return out


def get_dead_letter_channel() -> DeadLetterChannel:
    from privacy_advisor.celery_app import celery

    return DeadLetterChannel(celery.connection_for_write)


def requeue_dead_letters(
    db: Session,
    *,
    limit: int = 100,
    channel: DeadLetterChannel | None = None,
    publish: Publisher | None = None,
) -> int:
    """Move dead-lettered jobs back onto the scan queue. Returns how many were republished."""
    channel = channel or get_dead_letter_channel()
    requeued = 0
    for entry in channel.drain(limit):
        scan = db.get(Scan, entry.get("scanId"))
        if not scan:
            logger.warning("dead letter for unknown scan %s dropped", entry.get("scanId"))
            continue

        scan.status = "queued"
        scan.progress = 0
        scan.job_id = None
        scan.stall_count = 0
        scan.finished_at = None
        db.commit()

        job = ScanJob(
            scan_id=scan.id,
            url=entry.get("url") or scan.normalized_input or scan.input,
            normalized_input=scan.normalized_input or scan.input,
            request_id=entry.get("requestId") or scan.request_id,
        )
        if enqueue_scan_job(db, job, publish=publish):
            requeued += 1
    return requeued
