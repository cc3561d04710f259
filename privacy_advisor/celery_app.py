from celery import Celery

from privacy_advisor.core.config import (
    CELERY_BROKER_URL,
    CELERY_EAGER,
    CELERY_RESULT_BACKEND,
    SCAN_QUEUE,
    WORKER_CONCURRENCY,
    WORKER_LOCK_DURATION_MS,
    WORKER_RESULT_EXPIRES_SEC,
)

celery = Celery(
    "privacy_advisor",
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
    include=["privacy_advisor.scans.tasks"],
)

celery.conf.task_always_eager = CELERY_EAGER
# failures are recorded on the scan row, never raised at the producer
celery.conf.task_eager_propagates = False

# a job is acknowledged only after it finishes; an unacked job becomes visible
# again once the lease (visibility timeout) runs out
celery.conf.task_acks_late = True
celery.conf.task_reject_on_worker_lost = True
celery.conf.worker_prefetch_multiplier = 1
celery.conf.worker_concurrency = WORKER_CONCURRENCY
celery.conf.broker_transport_options = {"visibility_timeout": WORKER_LOCK_DURATION_MS / 1000}

celery.conf.result_expires = WORKER_RESULT_EXPIRES_SEC
celery.conf.task_default_queue = SCAN_QUEUE
celery.conf.task_routes = {"scan_site": {"queue": SCAN_QUEUE}}
