import logging

from privacy_advisor.celery_app import celery
from privacy_advisor.core.config import JobOptions
from privacy_advisor.scans.queue import ScanJob, get_dead_letter_channel
from privacy_advisor.scans.worker import NON_RETRYABLE, process_scan_job

logger = logging.getLogger(__name__)


@celery.task(name="scan_site", bind=True, acks_late=True, max_retries=None)
def scan_site_task(self, payload: dict):
    job = ScanJob.model_validate(payload)
    options = JobOptions()
    attempt = self.request.retries + 1
    try:
        return process_scan_job(
            job,
            attempt=attempt,
            options=options,
            dead_letters=get_dead_letter_channel(),
        )
    except NON_RETRYABLE as e:
        # already recorded on the scan and dead-lettered
        return {"ok": False, "scan_id": job.scan_id, "error": str(e)[:200]}
    except Exception as e:
        if attempt >= options.attempts:
            raise
        raise self.retry(
            exc=e,
            countdown=options.backoff_seconds(self.request.retries),
            max_retries=options.attempts - 1,
        )
