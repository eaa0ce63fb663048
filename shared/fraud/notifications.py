"""In-app alerts about suspected bot followers.

Rows are written here and picked up by an external delivery transport.
A notification never changes after creation except for ``read_at``.
"""

from __future__ import annotations

from typing import Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db_models import BotDetectionSignal, BotFollowerNotification
from fraud import events as event_store
from fraud.config import FraudSettings
from fraud.errors import NotFoundError
from fraud.types import Clock

log = structlog.get_logger(__name__)


def recipients_for(db: Session, flagged_user_id: str) -> list[str]:
    """Users the flagged account follows or is followed by (active edges)."""
    ids = set(event_store.active_followers(db, flagged_user_id))
    ids.update(event_store.active_following(db, flagged_user_id))
    ids.discard(flagged_user_id)
    return sorted(ids)


def dispatch_for_signal(
    db: Session,
    signal: BotDetectionSignal,
    *,
    clock: Clock,
    config: FraudSettings,
) -> int:
    """Create one notification per recipient. Returns how many were new.

    Does not commit. Re-dispatching the same signal creates nothing.
    """
    if signal.confidence_score < config.alert_confidence_threshold:
        return 0

    recipients = recipients_for(db, signal.subject_user_id)
    if not recipients:
        return 0

    already = {
        r[0]
        for r in db.query(BotFollowerNotification.recipient_user_id)
        .filter(BotFollowerNotification.signal_id == signal.id)
        .all()
    }
    now = clock()
    created = 0
    for rid in recipients:
        if rid in already:
            continue
        row = BotFollowerNotification(
            recipient_user_id=rid,
            bot_follower_id=signal.subject_user_id,
            signal_id=signal.id,
            signal_type=signal.signal_type,
            confidence_score=signal.confidence_score,
            notification_type="in_app",
            sent_at=now,
        )
        try:
            with db.begin_nested():
                db.add(row)
                db.flush()
        except IntegrityError:
            # concurrent dispatch of the same signal
            continue
        created += 1

    if created:
        log.info(
            "bot_notifications_created",
            signal_id=signal.id,
            signal_type=signal.signal_type,
            bot_follower_id=signal.subject_user_id,
            count=created,
        )
    return created


def list_notifications(db: Session, user_id: str, unread_only: bool = False) -> list[BotFollowerNotification]:
    q = db.query(BotFollowerNotification).filter(BotFollowerNotification.recipient_user_id == user_id)
    if unread_only:
        q = q.filter(BotFollowerNotification.read_at.is_(None))
    return q.order_by(BotFollowerNotification.sent_at.desc(), BotFollowerNotification.id.desc()).all()


def mark_as_read(
    db: Session,
    notification_id: int,
    *,
    clock: Clock,
    recipient_user_id: Optional[str] = None,
) -> BotFollowerNotification:
    """Idempotent: the first read time is kept."""
    row = db.get(BotFollowerNotification, notification_id)
    if row is None or (recipient_user_id is not None and row.recipient_user_id != recipient_user_id):
        raise NotFoundError("notification not found", notification_id=notification_id)
    if row.read_at is None:
        row.read_at = clock()
        db.add(row)
        db.commit()
    return row
