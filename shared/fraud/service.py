"""One entry point for the API and the worker.

``FraudService`` binds the configuration, the profile reader, the clock and
the lock registry once, so callers only pass a session and the operation's
own arguments.
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from db_models import AdminReview, BatchAnalysisJob, BotFollowerNotification, JobStatus, now_utc
from fraud import badges, batch, dashboard, events, notifications, review, scoring
from fraud.config import FraudSettings, get_fraud_settings
from fraud.locks import UserLocks, user_locks
from fraud.profiles import ProfileReader, SqlProfileReader, upsert_profile
from fraud.types import (
    BadgeResult,
    Clock,
    DashboardFilter,
    DashboardResult,
    IncomingEvent,
    ProfileSnapshot,
    RiskScoreResult,
    TrendsFilter,
    TrendsResult,
)


class FraudService:
    def __init__(
        self,
        *,
        config: Optional[FraudSettings] = None,
        profiles: Optional[ProfileReader] = None,
        clock: Clock = now_utc,
        locks: UserLocks = user_locks,
    ):
        self.config = config or get_fraud_settings()
        self.profiles = profiles or SqlProfileReader()
        self.clock = clock
        self.locks = locks

    # --- ingestion ---

    def ingest_events(self, db: Session, items: Iterable[IncomingEvent]) -> list[dict]:
        return events.ingest_events(db, items, clock=self.clock, config=self.config)

    def sync_profile(self, db: Session, snapshot: ProfileSnapshot):
        return upsert_profile(db, snapshot)

    # --- scores and badges ---

    def get_user_risk_score(self, db: Session, user_id: str) -> RiskScoreResult:
        return scoring.get_risk_score(db, user_id)

    def recompute_user(self, db: Session, user_id: str) -> RiskScoreResult:
        scoring.recompute(db, user_id, profiles=self.profiles, clock=self.clock, config=self.config, locks=self.locks)
        return scoring.get_risk_score(db, user_id)

    def get_user_badge_status(self, db: Session, user_id: str) -> BadgeResult:
        return badges.get_badge_status(db, user_id)

    def activate_badge(self, db: Session, user_id: str) -> BadgeResult:
        return badges.activate_badge(db, user_id, clock=self.clock, config=self.config, locks=self.locks)

    # --- notifications ---

    def get_user_bot_notifications(self, db: Session, user_id: str, unread_only: bool = False) -> list[BotFollowerNotification]:
        return notifications.list_notifications(db, user_id, unread_only)

    def mark_notification_as_read(self, db: Session, notification_id: int, recipient_user_id: Optional[str] = None) -> BotFollowerNotification:
        return notifications.mark_as_read(db, notification_id, clock=self.clock, recipient_user_id=recipient_user_id)

    # --- admin ---

    def review_user(self, db: Session, admin_id: str, user_id: str, notes: Optional[str] = None) -> AdminReview:
        return review.review_user(db, admin_id, user_id, notes, clock=self.clock, config=self.config, locks=self.locks)

    def ban_user(self, db: Session, admin_id: str, user_id: str, reason: str, notes: Optional[str] = None) -> AdminReview:
        return review.ban_user(db, admin_id, user_id, reason, notes, clock=self.clock, config=self.config, locks=self.locks)

    def clear_user(self, db: Session, admin_id: str, user_id: str, notes: Optional[str] = None) -> AdminReview:
        return review.clear_user(db, admin_id, user_id, notes, clock=self.clock, config=self.config, locks=self.locks)

    def list_reviews(self, db: Session, user_id: str) -> list[AdminReview]:
        return review.list_reviews(db, user_id)

    def get_fraud_dashboard(self, db: Session, f: DashboardFilter) -> DashboardResult:
        return dashboard.get_dashboard(db, f, self.config)

    def get_fraud_trends(self, db: Session, f: TrendsFilter) -> TrendsResult:
        return dashboard.get_trends(db, f, clock=self.clock, config=self.config)

    # --- batch ---

    def trigger_batch_analysis(
        self,
        db: Session,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> BatchAnalysisJob:
        return batch.trigger_batch_analysis(db, date_from, date_to, clock=self.clock, config=self.config)

    def get_batch_job(self, db: Session, job_id: int) -> BatchAnalysisJob:
        return batch.get_job(db, job_id)

    def cancel_batch_job(self, db: Session, job_id: int) -> BatchAnalysisJob:
        return batch.request_cancel(db, job_id)

    def run_batch_job(self, session_factory, job_id: int, cancel_event: Optional[threading.Event] = None) -> JobStatus:
        return batch.BatchRunner(
            session_factory,
            job_id,
            profiles=self.profiles,
            clock=self.clock,
            config=self.config,
            cancel_event=cancel_event,
            locks=self.locks,
        ).run()

    def drain_recompute_queue(self, session_factory, limit: Optional[int] = None) -> dict:
        return batch.drain_recompute_queue(
            session_factory, profiles=self.profiles, clock=self.clock, config=self.config, limit=limit, locks=self.locks,
        )

    def reap_stalled_jobs(self, db: Session) -> list[int]:
        return batch.reap_stalled_jobs(db, clock=self.clock, config=self.config)
