import os
import structlog
from celery import Celery

from logging_setup import configure_structured_logging
from db_log_handler import install_db_log_handler

### Logging setup ###

SERVICE_NAME = os.getenv("SERVICE_NAME", "worker")

configure_structured_logging(SERVICE_NAME)
install_db_log_handler()

log = structlog.get_logger(__name__)
log.info("worker_startup", service=SERVICE_NAME)

###

REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")

celery = Celery(
    "followguard_worker",
    broker=REDIS_URL,
    backend=REDIS_URL,
    include=["tasks"],
)

celery.conf.update(
    task_routes={
        # long scans never queue behind the short housekeeping tasks
        "tasks.fraud_batch_analysis": {"queue": "fraud_batch"},
        "tasks.fraud_scheduled_batch": {"queue": "fraud_batch"},
        "tasks.fraud_drain_recompute_queue": {"queue": "fraud"},
        "tasks.fraud_reap_stalled_jobs": {"queue": "fraud"},
    },
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)

celery.conf.update(
    task_default_queue="celery",
    task_track_started=True,
    timezone="UTC",
)
