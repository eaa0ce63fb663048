import os
import time

import structlog
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from structlog.contextvars import bind_contextvars, clear_contextvars

from celery_app import celery
from db_models import JobStatus
from fraud.locks import locks_from_env
from fraud.service import FraudService

### Database session maker
DATABASE_URL = os.getenv("DATABASE_URL")
engine = create_engine(DATABASE_URL, pool_pre_ping=True)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

log = structlog.get_logger(__name__)

service = FraudService(locks=locks_from_env())


@celery.task(name="tasks.fraud_batch_analysis")
def fraud_batch_analysis(job_id: int):
    clear_contextvars()
    task_id = getattr(fraud_batch_analysis.request, "id", None)
    bind_contextvars(task="fraud_batch_analysis", task_id=task_id, job_id=job_id)

    start = time.time()
    log.info("task_started")

    try:
        status = service.run_batch_job(SessionLocal, int(job_id))
        log.info("task_finished", status=status.value, duration_ms=int((time.time() - start) * 1000))
        return {"ok": status == JobStatus.completed, "job_id": job_id, "status": status.value}

    except Exception as e:
        log.exception("task_failed", duration_ms=int((time.time() - start) * 1000), error=str(e))
        raise


@celery.task(name="tasks.fraud_scheduled_batch")
def fraud_scheduled_batch():
    """Nightly run over everything since the last completed job."""
    clear_contextvars()
    task_id = getattr(fraud_scheduled_batch.request, "id", None)
    bind_contextvars(task="fraud_scheduled_batch", task_id=task_id)
    log.info("task_started")

    db = SessionLocal()
    try:
        job = service.trigger_batch_analysis(db)
        job_id = job.id
    except Exception as e:
        db.rollback()
        log.exception("task_failed", error=str(e))
        raise
    finally:
        db.close()

    bind_contextvars(job_id=job_id)
    try:
        status = service.run_batch_job(SessionLocal, job_id)
        log.info("task_finished", status=status.value)
        return {"ok": status == JobStatus.completed, "job_id": job_id, "status": status.value}
    except Exception as e:
        log.exception("task_failed", error=str(e))
        raise


@celery.task(name="tasks.fraud_drain_recompute_queue")
def fraud_drain_recompute_queue(limit: int | None = None):
    clear_contextvars()
    task_id = getattr(fraud_drain_recompute_queue.request, "id", None)
    bind_contextvars(task="fraud_drain_recompute_queue", task_id=task_id, limit=limit)
    log.info("task_started")

    try:
        result = service.drain_recompute_queue(SessionLocal, limit=limit)
        log.info("task_finished", **result)
        return {"ok": True, **result}
    except Exception as e:
        log.exception("task_failed", error=str(e))
        raise


@celery.task(name="tasks.fraud_reap_stalled_jobs")
def fraud_reap_stalled_jobs():
    clear_contextvars()
    task_id = getattr(fraud_reap_stalled_jobs.request, "id", None)
    bind_contextvars(task="fraud_reap_stalled_jobs", task_id=task_id)
    log.info("task_started")

    db = SessionLocal()
    try:
        reaped = service.reap_stalled_jobs(db)
        log.info("task_finished", reaped=len(reaped))
        return {"ok": True, "reaped": reaped}
    except Exception as e:
        db.rollback()
        log.exception("task_failed", error=str(e))
        raise
    finally:
        db.close()
