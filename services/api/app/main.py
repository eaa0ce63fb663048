import os
from datetime import datetime
from typing import Optional

import structlog
from celery import Celery
from fastapi import Depends, FastAPI, Form, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from auth import COOKIE_NAME, require_admin, sign_session
from db import get_db, init_db
from db_models import AdminReview, BatchAnalysisJob, BotFollowerNotification, JobStatus
from fraud.errors import (
    ConflictError,
    FraudError,
    NotFoundError,
    TransientStoreError,
    ValidationError,
    translate_db_error,
)
from fraud.locks import locks_from_env
from fraud.service import FraudService
from fraud.types import DashboardFilter, IncomingEvent, ProfileSnapshot, TrendsFilter
from settings import settings

### Init app

app = FastAPI(title="FollowGuard Fraud Control Plane", version="0.1.0")

### Logging middleware wire-in ###

from middleware.request_id import RequestIDMiddleware
app.add_middleware(RequestIDMiddleware)

from middleware.access_log import AccessLogMiddleware
app.add_middleware(AccessLogMiddleware)

### Logging init ###

from logging_setup import configure_structured_logging
from db_log_handler import install_db_log_handler

SERVICE_NAME = os.getenv("SERVICE_NAME", "api")

configure_structured_logging(SERVICE_NAME)
install_db_log_handler()

log = structlog.get_logger(__name__)
log.info("api_startup", service=SERVICE_NAME)

###

if settings.create_tables_on_startup:
    init_db()

celery_client = Celery("followguard_api_client", broker=settings.redis_url, backend=settings.redis_url)

fraud_service = FraudService(locks=locks_from_env())


def get_service() -> FraudService:
    return fraud_service


### Errors -> HTTP

ERROR_STATUS = {
    ValidationError: 422,
    NotFoundError: 404,
    ConflictError: 409,
    TransientStoreError: 503,
}


def _error_response(exc: FraudError) -> JSONResponse:
    status_code = next((s for cls, s in ERROR_STATUS.items() if isinstance(exc, cls)), 500)
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.code, "detail": exc.message, "context": exc.context},
    )


@app.exception_handler(FraudError)
async def fraud_error_handler(request: Request, exc: FraudError):
    if isinstance(exc, TransientStoreError):
        log.warning("store_unavailable", path=request.url.path, error=exc.message)
    return _error_response(exc)


@app.exception_handler(DBAPIError)
async def db_error_handler(request: Request, exc: DBAPIError):
    err = translate_db_error(exc)
    if isinstance(err, FraudError):
        log.warning("store_unavailable", path=request.url.path, error=err.message)
        return _error_response(err)
    log.error("db_error", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=500, content={"error": "internal_error", "detail": "database error"})


### Request bodies

class EventIn(BaseModel):
    follower_user_id: str
    followed_user_id: str
    event_type: str
    occurred_at: Optional[datetime] = None
    source_metadata: dict = Field(default_factory=dict)


class EventBatchIn(BaseModel):
    events: list[EventIn] = Field(..., min_length=1, max_length=1000)


class ProfileIn(BaseModel):
    account_created_at: Optional[datetime] = None
    post_count: Optional[int] = Field(default=None, ge=0)
    comment_count: Optional[int] = Field(default=None, ge=0)
    has_avatar: Optional[bool] = None
    has_bio: Optional[bool] = None


class ReviewIn(BaseModel):
    notes: Optional[str] = None


class BanIn(BaseModel):
    reason: str = ""
    notes: Optional[str] = None


class BatchIn(BaseModel):
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None


### Serializers

def review_out(r: AdminReview) -> dict:
    return {
        "id": r.id,
        "user_id": r.user_id,
        "admin_id": r.admin_id,
        "action": r.action.value,
        "reason": r.reason,
        "notes": r.notes,
        "risk_score_at_review": r.risk_score_at_review,
        "created_at": r.created_at,
    }


def notification_out(n: BotFollowerNotification) -> dict:
    return {
        "id": n.id,
        "recipient_user_id": n.recipient_user_id,
        "bot_follower_id": n.bot_follower_id,
        "signal_id": n.signal_id,
        "signal_type": n.signal_type,
        "confidence_score": n.confidence_score,
        "notification_type": n.notification_type,
        "sent_at": n.sent_at,
        "read_at": n.read_at,
    }


def job_out(j: BatchAnalysisJob) -> dict:
    return {
        "job_id": j.id,
        "status": JobStatus(j.status).value,
        "date_from": j.date_from,
        "date_to": j.date_to,
        "started_at": j.started_at,
        "completed_at": j.completed_at,
        "heartbeat_at": j.heartbeat_at,
        "cancel_requested": j.cancel_requested,
        "processed_followers": j.processed_followers,
        "new_signals_detected": j.new_signals_detected,
        "users_scored": j.users_scored,
        "users_failed": j.users_failed,
        "message": j.message,
    }


@app.get("/health")
def health():
    return {"ok": True}

# ---- Login / Logout ----

@app.post("/login")
def login_submit(
    username: str = Form(...),
    token: str = Form(...),
):
    if token != settings.admin_token:
        raise HTTPException(status_code=401, detail="Invalid token")

    admin_id = username.strip()[:80] or "admin"
    resp = JSONResponse({"ok": True, "admin_id": admin_id})
    resp.set_cookie(
        key=COOKIE_NAME,
        value=sign_session(admin_id),
        httponly=True,
        samesite="lax",
        secure=False,  # set True behind HTTPS
        max_age=settings.session_max_age_seconds,
    )
    log.info("admin_login", admin_id=admin_id)
    return resp

@app.post("/logout")
def logout():
    resp = JSONResponse({"ok": True})
    resp.delete_cookie(COOKIE_NAME)
    return resp

# ---- Ingestion ----

@app.post("/followers/events")
def ingest_follower_events(
    body: EventBatchIn,
    db: Session = Depends(get_db),
    svc: FraudService = Depends(get_service),
    _: str = Depends(require_admin),
):
    results = svc.ingest_events(db, [
        IncomingEvent(
            follower_user_id=e.follower_user_id,
            followed_user_id=e.followed_user_id,
            event_type=e.event_type,
            occurred_at=e.occurred_at,
            source_metadata=e.source_metadata,
        )
        for e in body.events
    ])
    return {
        "created": sum(1 for r in results if r["ok"] and r["created"]),
        "duplicates": sum(1 for r in results if r["ok"] and not r["created"]),
        "rejected": sum(1 for r in results if not r["ok"]),
        "results": results,
    }

@app.put("/internal/profiles/{user_id}")
def sync_profile(
    user_id: str,
    body: ProfileIn,
    db: Session = Depends(get_db),
    svc: FraudService = Depends(get_service),
    _: str = Depends(require_admin),
):
    row = svc.sync_profile(db, ProfileSnapshot(user_id=user_id, **body.model_dump()))
    return {"user_id": row.user_id, "synced_at": row.synced_at}

# ---- Users ----

@app.get("/users/{user_id}/risk-score")
def user_risk_score(
    user_id: str,
    db: Session = Depends(get_db),
    svc: FraudService = Depends(get_service),
    _: str = Depends(require_admin),
):
    return svc.get_user_risk_score(db, user_id)

@app.get("/users/{user_id}/badge")
def user_badge(
    user_id: str,
    db: Session = Depends(get_db),
    svc: FraudService = Depends(get_service),
    _: str = Depends(require_admin),
):
    return svc.get_user_badge_status(db, user_id)

@app.post("/users/{user_id}/badge/activate")
def activate_user_badge(
    user_id: str,
    db: Session = Depends(get_db),
    svc: FraudService = Depends(get_service),
    _: str = Depends(require_admin),
):
    return svc.activate_badge(db, user_id)

@app.get("/users/{user_id}/bot-notifications")
def user_bot_notifications(
    user_id: str,
    unread_only: bool = False,
    db: Session = Depends(get_db),
    svc: FraudService = Depends(get_service),
    _: str = Depends(require_admin),
):
    items = svc.get_user_bot_notifications(db, user_id, unread_only)
    return {"user_id": user_id, "notifications": [notification_out(n) for n in items]}

@app.post("/notifications/{notification_id}/read")
def read_notification(
    notification_id: int,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db),
    svc: FraudService = Depends(get_service),
    _: str = Depends(require_admin),
):
    return notification_out(svc.mark_notification_as_read(db, notification_id, recipient_user_id=user_id))

# ---- Admin ----

@app.get("/admin/fraud-dashboard")
def fraud_dashboard(
    min_risk_score: Optional[int] = None,
    max_risk_score: Optional[int] = None,
    signal_types: list[str] = Query(default=[]),
    review_status: Optional[str] = None,
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    page: int = 1,
    page_size: int = 20,
    db: Session = Depends(get_db),
    svc: FraudService = Depends(get_service),
    _: str = Depends(require_admin),
):
    # accept both ?signal_types=a&signal_types=b and ?signal_types=a,b
    types = [t.strip() for raw in signal_types for t in raw.split(",")]
    return svc.get_fraud_dashboard(db, DashboardFilter(
        min_risk_score=min_risk_score,
        max_risk_score=max_risk_score,
        signal_types=types,
        review_status=review_status,
        from_date=from_date,
        to_date=to_date,
        page=page,
        page_size=page_size,
    ))

@app.post("/admin/users/{user_id}/review")
def review_user(
    user_id: str,
    body: Optional[ReviewIn] = None,
    db: Session = Depends(get_db),
    svc: FraudService = Depends(get_service),
    admin_id: str = Depends(require_admin),
):
    return review_out(svc.review_user(db, admin_id, user_id, body.notes if body else None))

@app.post("/admin/users/{user_id}/ban")
def ban_user(
    user_id: str,
    body: BanIn,
    db: Session = Depends(get_db),
    svc: FraudService = Depends(get_service),
    admin_id: str = Depends(require_admin),
):
    return review_out(svc.ban_user(db, admin_id, user_id, body.reason, body.notes))

@app.post("/admin/users/{user_id}/clear")
def clear_user(
    user_id: str,
    body: Optional[ReviewIn] = None,
    db: Session = Depends(get_db),
    svc: FraudService = Depends(get_service),
    admin_id: str = Depends(require_admin),
):
    return review_out(svc.clear_user(db, admin_id, user_id, body.notes if body else None))

@app.get("/admin/users/{user_id}/reviews")
def user_reviews(
    user_id: str,
    db: Session = Depends(get_db),
    svc: FraudService = Depends(get_service),
    _: str = Depends(require_admin),
):
    return {"user_id": user_id, "reviews": [review_out(r) for r in svc.list_reviews(db, user_id)]}

# ---- Analytics ----

@app.get("/analytics/fraud-trends")
def fraud_trends(
    period: str = "7d",
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    db: Session = Depends(get_db),
    svc: FraudService = Depends(get_service),
    _: str = Depends(require_admin),
):
    return svc.get_fraud_trends(db, TrendsFilter(period=period, from_date=from_date, to_date=to_date))

# ---- Batch analysis ----

@app.post("/followers/batch-analyze")
def trigger_batch_analysis(
    body: Optional[BatchIn] = None,
    db: Session = Depends(get_db),
    svc: FraudService = Depends(get_service),
    admin_id: str = Depends(require_admin),
):
    body = body or BatchIn()
    job = svc.trigger_batch_analysis(db, body.date_from, body.date_to)
    try:
        celery_client.send_task(settings.batch_analysis_task, kwargs={"job_id": job.id})
    except Exception as e:
        log.exception("batch_enqueue_failed", job_id=job.id, error=str(e))
        job.status = JobStatus.failed
        job.message = "could not enqueue job"
        db.add(job)
        db.commit()
        raise TransientStoreError("task broker unavailable", job_id=job.id) from e
    log.info("batch_job_enqueued", job_id=job.id, admin_id=admin_id)
    return {"job_id": job.id, "status": JobStatus(job.status).value}

@app.get("/followers/batch-analyze/{job_id}")
def batch_job_status(
    job_id: int,
    db: Session = Depends(get_db),
    svc: FraudService = Depends(get_service),
    _: str = Depends(require_admin),
):
    return job_out(svc.get_batch_job(db, job_id))

@app.post("/followers/batch-analyze/{job_id}/cancel")
def cancel_batch_job(
    job_id: int,
    db: Session = Depends(get_db),
    svc: FraudService = Depends(get_service),
    admin_id: str = Depends(require_admin),
):
    job = svc.cancel_batch_job(db, job_id)
    log.info("batch_cancel_via_api", job_id=job_id, admin_id=admin_id)
    return job_out(job)
