"""Admin moderation: review, ban and clear.

Every action appends one ``admin_reviews`` row and commits it together with
any badge change. The audit trail is insert-only.
"""

from __future__ import annotations

from typing import Optional

import structlog
from sqlalchemy.orm import Session

from db_models import AdminReview, ReviewAction, UserRiskScore
from fraud import badges
from fraud.config import FraudSettings
from fraud.errors import ValidationError
from fraud.locks import UserLocks, user_locks
from fraud.types import Clock

log = structlog.get_logger(__name__)


def _require(value: Optional[str], name: str) -> str:
    v = (value or "").strip()
    if not v:
        raise ValidationError(f"{name} is required")
    return v


def _current_score(db: Session, user_id: str) -> Optional[int]:
    row = db.query(UserRiskScore).filter(UserRiskScore.user_id == user_id).first()
    return row.overall_score if row else None


def _apply(
    db: Session,
    action: ReviewAction,
    admin_id: str,
    user_id: str,
    *,
    reason: Optional[str],
    notes: Optional[str],
    clock: Clock,
    config: FraudSettings,
    locks: UserLocks,
) -> AdminReview:
    with locks.hold(user_id):
        try:
            now = clock()
            review = AdminReview(
                user_id=user_id,
                admin_id=admin_id,
                action=action,
                reason=reason,
                notes=notes,
                risk_score_at_review=_current_score(db, user_id),
                created_at=now,
            )
            db.add(review)

            if action != ReviewAction.reviewed:
                row = badges.load_badge(db, user_id, for_update=True)
                state = badges.state_of(row)
                if action == ReviewAction.banned:
                    new = badges.ban(state, reason or "", now)
                else:
                    new = badges.clear(state, now)
                badges.store_badge(
                    db, user_id, row, new,
                    now=now, badge_type=config.badge_type, cause=f"admin_{action.value}",
                )
            db.commit()
        except Exception:
            db.rollback()
            raise

    log.info(
        "admin_action_recorded",
        action=action.value,
        admin_id=admin_id,
        user_id=user_id,
        risk_score_at_review=review.risk_score_at_review,
    )
    return review


def review_user(
    db: Session,
    admin_id: str,
    user_id: str,
    notes: Optional[str] = None,
    *,
    clock: Clock,
    config: FraudSettings,
    locks: UserLocks = user_locks,
) -> AdminReview:
    """Record that an admin looked at the account. Score and badge are untouched."""
    return _apply(
        db, ReviewAction.reviewed, _require(admin_id, "admin_id"), _require(user_id, "user_id"),
        reason=None, notes=notes, clock=clock, config=config, locks=locks,
    )


def ban_user(
    db: Session,
    admin_id: str,
    user_id: str,
    reason: str,
    notes: Optional[str] = None,
    *,
    clock: Clock,
    config: FraudSettings,
    locks: UserLocks = user_locks,
) -> AdminReview:
    """Revoke the badge whatever the score. Only ``clear_user`` undoes this."""
    return _apply(
        db, ReviewAction.banned, _require(admin_id, "admin_id"), _require(user_id, "user_id"),
        reason=_require(reason, "reason"), notes=notes, clock=clock, config=config, locks=locks,
    )


def clear_user(
    db: Session,
    admin_id: str,
    user_id: str,
    notes: Optional[str] = None,
    *,
    clock: Clock,
    config: FraudSettings,
    locks: UserLocks = user_locks,
) -> AdminReview:
    """Reset the badge to ``none``; the next recompute may make it eligible again."""
    return _apply(
        db, ReviewAction.cleared, _require(admin_id, "admin_id"), _require(user_id, "user_id"),
        reason=None, notes=notes, clock=clock, config=config, locks=locks,
    )


def list_reviews(db: Session, user_id: str) -> list[AdminReview]:
    return (
        db.query(AdminReview)
        .filter(AdminReview.user_id == user_id)
        .order_by(AdminReview.created_at.desc(), AdminReview.id.desc())
        .all()
    )
