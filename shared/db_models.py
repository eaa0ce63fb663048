import enum
from datetime import datetime, timezone
from sqlalchemy import (
    Column, String, Text, DateTime, Integer, Boolean, Enum, UniqueConstraint, Float, Index, JSON, CheckConstraint
)
from sqlalchemy.orm import Mapped, mapped_column, DeclarativeBase
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func

# JSONB on Postgres, plain JSON elsewhere (tests run on SQLite)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def now_utc() -> datetime:
    """Naive UTC timestamp; every datetime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass

class FollowerEventType(str, enum.Enum):
    follow = "follow"
    unfollow = "unfollow"

class BadgeStatus(str, enum.Enum):
    none = "none"          # initial
    eligible = "eligible"  # score + age qualify; waiting for activation
    active = "active"      # shown on the profile
    revoked = "revoked"    # terminal until an admin clears it

class ReviewAction(str, enum.Enum):
    reviewed = "reviewed"
    banned = "banned"
    cleared = "cleared"

class JobStatus(str, enum.Enum):
    started = "started"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"

class AppLog(Base):
    __tablename__ = "app_logs"

    id = Column(Integer, primary_key=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    level = Column(String(16), nullable=False, index=True)
    logger = Column(String(128), nullable=True, index=True)
    service = Column(String(32), nullable=True, index=True)   # api / worker / beat
    message = Column(Text, nullable=True)

    request_id = Column(String(64), nullable=True, index=True)
    task_id = Column(String(64), nullable=True, index=True)

    event = Column(String(128), nullable=True, index=True)
    data = Column(JSONType, nullable=True)

class FollowerEvent(Base):
    """Append-only follow/unfollow ledger. Rows are never updated or deleted."""
    __tablename__ = "follower_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    followed_user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    follower_user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    event_type: Mapped[FollowerEventType] = mapped_column(
        Enum(FollowerEventType, name="followereventtype"), nullable=False
    )
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    occurred_bucket: Mapped[int] = mapped_column(Integer, nullable=False)  # epoch // dedupe bucket size
    source_metadata: Mapped[dict] = mapped_column(JSONType, nullable=True)  # ip_address / user_agent / referrer
    created_at: Mapped[datetime] = mapped_column(DateTime, default=now_utc, nullable=False)

    __table_args__ = (
        # at-least-once delivery from collectors lands on this key
        UniqueConstraint(
            "follower_user_id", "followed_user_id", "event_type", "occurred_bucket",
            name="uq_follower_events_natural_key",
        ),
        Index("ix_follower_events_followed_time", "followed_user_id", "occurred_at"),
    )

class FollowerEdge(Base):
    """Current follow relationship, projected from follower_events on ingestion."""
    __tablename__ = "follower_edges"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    followed_user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    follower_user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    first_followed_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    last_event_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("followed_user_id", "follower_user_id", name="uq_follower_edges_pair"),
    )

class AccountProfile(Base):
    """Read-only mirror of the account service. NULL means unknown."""
    __tablename__ = "account_profiles"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    account_created_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    post_count: Mapped[int] = mapped_column(Integer, nullable=True)
    comment_count: Mapped[int] = mapped_column(Integer, nullable=True)
    has_avatar: Mapped[bool] = mapped_column(Boolean, nullable=True)
    has_bio: Mapped[bool] = mapped_column(Boolean, nullable=True)
    synced_at: Mapped[datetime] = mapped_column(DateTime, default=now_utc, nullable=False)

class BotDetectionSignal(Base):
    __tablename__ = "bot_detection_signals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subject_user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)  # suspected bot
    signal_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    confidence_score: Mapped[float] = mapped_column(Float, nullable=False)  # 0..1
    detected_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    evidence: Mapped[dict] = mapped_column(JSONType, nullable=True)
    related_accounts: Mapped[list] = mapped_column(JSONType, nullable=True)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)

    __table_args__ = (
        UniqueConstraint("subject_user_id", "signal_type", "fingerprint", name="uq_bot_signals_fingerprint"),
    )

class UserRiskScore(Base):
    """One current row per user, upserted by the risk scorer."""
    __tablename__ = "user_risk_scores"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    overall_score: Mapped[int] = mapped_column(Integer, nullable=False, index=True)  # 0-100
    follower_authenticity_score: Mapped[int] = mapped_column(Integer, nullable=False)  # 0-100
    engagement_quality_score: Mapped[int] = mapped_column(Integer, nullable=False)  # 0-100
    account_age_factor: Mapped[float] = mapped_column(Float, nullable=False)  # 0-1
    calculation_version: Mapped[str] = mapped_column(String(20), nullable=False)
    follower_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    bot_follower_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_calculated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=now_utc, nullable=False)

    __table_args__ = (
        CheckConstraint("overall_score BETWEEN 0 AND 100", name="ck_user_risk_scores_overall_range"),
    )

class UserBadgeStatus(Base):
    __tablename__ = "user_badge_statuses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    badge_type: Mapped[str] = mapped_column(String(50), default="authentic", nullable=False)
    status: Mapped[BadgeStatus] = mapped_column(
        Enum(BadgeStatus, name="badgestatus"), default=BadgeStatus.none, nullable=False, index=True
    )
    eligible_since: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    activated_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    revoked_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    revocation_reason: Mapped[str] = mapped_column(String(255), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=now_utc, nullable=False)

class AdminReview(Base):
    """Compliance audit trail: insert only."""
    __tablename__ = "admin_reviews"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    admin_id: Mapped[str] = mapped_column(String(120), nullable=False, index=True)
    action: Mapped[ReviewAction] = mapped_column(Enum(ReviewAction, name="reviewaction"), nullable=False, index=True)
    reason: Mapped[str] = mapped_column(String(500), nullable=True)
    notes: Mapped[str] = mapped_column(Text, nullable=True)
    risk_score_at_review: Mapped[int] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=now_utc, nullable=False, index=True)

class BotFollowerNotification(Base):
    __tablename__ = "bot_follower_notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    recipient_user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    bot_follower_id: Mapped[str] = mapped_column(String(64), nullable=False)
    signal_id: Mapped[int] = mapped_column(Integer, nullable=False)
    signal_type: Mapped[str] = mapped_column(String(50), nullable=False)
    confidence_score: Mapped[float] = mapped_column(Float, nullable=False)
    notification_type: Mapped[str] = mapped_column(String(20), default="in_app", nullable=False)
    sent_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    read_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)  # the only mutable column

    __table_args__ = (
        UniqueConstraint("recipient_user_id", "signal_id", name="uq_bot_notifications_recipient_signal"),
    )

class BatchAnalysisJob(Base):
    __tablename__ = "batch_analysis_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, name="jobstatus"), default=JobStatus.started, nullable=False, index=True
    )
    date_from: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    date_to: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    completed_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    heartbeat_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)  # stall detection
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    processed_followers: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    new_signals_detected: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    users_scored: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    users_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=True)

class ScoreRecomputeRequest(Base):
    """Pending "recompute user X" requests; one row per user coalesces bursts."""
    __tablename__ = "score_recompute_requests"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    requested_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
