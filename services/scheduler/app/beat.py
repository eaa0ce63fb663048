import os
from celery import Celery
from celery.schedules import crontab

REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")

# seconds between queue drains; ingestion only enqueues, so this bounds score staleness
RECOMPUTE_DRAIN_SECONDS = float(os.getenv("RECOMPUTE_DRAIN_SECONDS", "60"))

celery = Celery("followguard_beat", broker=REDIS_URL)
celery.conf.timezone = "UTC"

celery.conf.beat_schedule = {
    "fraud-nightly-batch": {
        "task": "tasks.fraud_scheduled_batch",
        "schedule": crontab(hour=2, minute=30),
    },
    "fraud-drain-recompute-queue": {
        "task": "tasks.fraud_drain_recompute_queue",
        "schedule": RECOMPUTE_DRAIN_SECONDS,
    },
    "fraud-reap-stalled-jobs": {
        "task": "tasks.fraud_reap_stalled_jobs",
        "schedule": crontab(minute="*/5"),
    },
}

# same routing as the worker app so beat-sent tasks land on the right queues
celery.conf.task_routes = {
    "tasks.fraud_scheduled_batch": {"queue": "fraud_batch"},
    "tasks.fraud_drain_recompute_queue": {"queue": "fraud"},
    "tasks.fraud_reap_stalled_jobs": {"queue": "fraud"},
}
