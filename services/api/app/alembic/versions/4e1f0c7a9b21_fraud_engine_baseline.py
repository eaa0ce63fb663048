"""fraud engine baseline

Revision ID: 4e1f0c7a9b21
Revises: 
Create Date: 2026-10-17 09:12:40.118204

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '4e1f0c7a9b21'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONB = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")

follower_event_type = sa.Enum("follow", "unfollow", name="followereventtype")
badge_status = sa.Enum("none", "eligible", "active", "revoked", name="badgestatus")
review_action = sa.Enum("reviewed", "banned", "cleared", name="reviewaction")
job_status = sa.Enum("started", "completed", "failed", "cancelled", name="jobstatus")


def upgrade() -> None:
    op.create_table(
        "app_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("level", sa.String(length=16), nullable=False, index=True),
        sa.Column("logger", sa.String(length=128), nullable=True, index=True),
        sa.Column("service", sa.String(length=32), nullable=True, index=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("request_id", sa.String(length=64), nullable=True, index=True),
        sa.Column("task_id", sa.String(length=64), nullable=True, index=True),
        sa.Column("event", sa.String(length=128), nullable=True, index=True),
        sa.Column("data", JSONB, nullable=True),
    )

    # Append-only ledger; the natural key absorbs at-least-once delivery
    op.create_table(
        "follower_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("followed_user_id", sa.String(length=64), nullable=False, index=True),
        sa.Column("follower_user_id", sa.String(length=64), nullable=False, index=True),
        sa.Column("event_type", follower_event_type, nullable=False),
        sa.Column("occurred_at", sa.DateTime(), nullable=False, index=True),
        sa.Column("occurred_bucket", sa.Integer(), nullable=False),
        sa.Column("source_metadata", JSONB, nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint(
            "follower_user_id", "followed_user_id", "event_type", "occurred_bucket",
            name="uq_follower_events_natural_key",
        ),
    )
    op.create_index("ix_follower_events_followed_time", "follower_events", ["followed_user_id", "occurred_at"])

    op.create_table(
        "follower_edges",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("followed_user_id", sa.String(length=64), nullable=False, index=True),
        sa.Column("follower_user_id", sa.String(length=64), nullable=False, index=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("first_followed_at", sa.DateTime(), nullable=True),
        sa.Column("last_event_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("followed_user_id", "follower_user_id", name="uq_follower_edges_pair"),
    )

    op.create_table(
        "account_profiles",
        sa.Column("user_id", sa.String(length=64), primary_key=True),
        sa.Column("account_created_at", sa.DateTime(), nullable=True),
        sa.Column("post_count", sa.Integer(), nullable=True),
        sa.Column("comment_count", sa.Integer(), nullable=True),
        sa.Column("has_avatar", sa.Boolean(), nullable=True),
        sa.Column("has_bio", sa.Boolean(), nullable=True),
        sa.Column("synced_at", sa.DateTime(), nullable=False, server_default=sa.text("now()")),
    )

    op.create_table(
        "bot_detection_signals",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("subject_user_id", sa.String(length=64), nullable=False, index=True),
        sa.Column("signal_type", sa.String(length=50), nullable=False, index=True),
        sa.Column("confidence_score", sa.Float(), nullable=False),
        sa.Column("detected_at", sa.DateTime(), nullable=False, index=True),
        sa.Column("evidence", JSONB, nullable=True),
        sa.Column("related_accounts", JSONB, nullable=True),
        sa.Column("fingerprint", sa.String(length=64), nullable=False),
        sa.UniqueConstraint("subject_user_id", "signal_type", "fingerprint", name="uq_bot_signals_fingerprint"),
    )

    op.create_table(
        "user_risk_scores",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(length=64), nullable=False, unique=True),
        sa.Column("overall_score", sa.Integer(), nullable=False, index=True),
        sa.Column("follower_authenticity_score", sa.Integer(), nullable=False),
        sa.Column("engagement_quality_score", sa.Integer(), nullable=False),
        sa.Column("account_age_factor", sa.Float(), nullable=False),
        sa.Column("calculation_version", sa.String(length=20), nullable=False),
        sa.Column("follower_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("bot_follower_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_calculated_at", sa.DateTime(), nullable=False, index=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("overall_score BETWEEN 0 AND 100", name="ck_user_risk_scores_overall_range"),
    )

    op.create_table(
        "user_badge_statuses",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(length=64), nullable=False, unique=True),
        sa.Column("badge_type", sa.String(length=50), nullable=False, server_default="authentic"),
        sa.Column("status", badge_status, nullable=False, server_default="none", index=True),
        sa.Column("eligible_since", sa.DateTime(), nullable=True),
        sa.Column("activated_at", sa.DateTime(), nullable=True),
        sa.Column("revoked_at", sa.DateTime(), nullable=True),
        sa.Column("revocation_reason", sa.String(length=255), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.text("now()")),
    )

    # Compliance trail: never updated or deleted
    op.create_table(
        "admin_reviews",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(length=64), nullable=False, index=True),
        sa.Column("admin_id", sa.String(length=120), nullable=False, index=True),
        sa.Column("action", review_action, nullable=False, index=True),
        sa.Column("reason", sa.String(length=500), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("risk_score_at_review", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("now()"), index=True),
    )

    op.create_table(
        "bot_follower_notifications",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("recipient_user_id", sa.String(length=64), nullable=False, index=True),
        sa.Column("bot_follower_id", sa.String(length=64), nullable=False),
        sa.Column("signal_id", sa.Integer(), nullable=False),
        sa.Column("signal_type", sa.String(length=50), nullable=False),
        sa.Column("confidence_score", sa.Float(), nullable=False),
        sa.Column("notification_type", sa.String(length=20), nullable=False, server_default="in_app"),
        sa.Column("sent_at", sa.DateTime(), nullable=False),
        sa.Column("read_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("recipient_user_id", "signal_id", name="uq_bot_notifications_recipient_signal"),
    )

    op.create_table(
        "batch_analysis_jobs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("status", job_status, nullable=False, server_default="started", index=True),
        sa.Column("date_from", sa.DateTime(), nullable=False),
        sa.Column("date_to", sa.DateTime(), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(), nullable=False),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("processed_followers", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("new_signals_detected", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("users_scored", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("users_failed", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("message", sa.Text(), nullable=True),
    )

    op.create_table(
        "score_recompute_requests",
        sa.Column("user_id", sa.String(length=64), primary_key=True),
        sa.Column("requested_at", sa.DateTime(), nullable=False, index=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
    )


def downgrade() -> None:
    for table in (
        "score_recompute_requests",
        "batch_analysis_jobs",
        "bot_follower_notifications",
        "admin_reviews",
        "user_badge_statuses",
        "user_risk_scores",
        "bot_detection_signals",
        "account_profiles",
        "follower_edges",
        "follower_events",
        "app_logs",
    ):
        op.drop_table(table)
    bind = op.get_bind()
    for enum in (job_status, review_action, badge_status, follower_event_type):
        enum.drop(bind, checkfirst=True)
