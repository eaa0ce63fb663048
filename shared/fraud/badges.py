"""Authenticity badge lifecycle.

    none --(score >= eligible_threshold and old enough)--> eligible
    eligible --(explicit activation)--> active
    eligible --(score < revoke_threshold)--> none
    active --(score < revoke_threshold | ban)--> revoked
    any --(ban)--> revoked
    any --(admin clear)--> none

``revoked`` is only left through ``clear``. Automatic scoring never moves a
revoked badge.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from db_models import BadgeStatus, UserBadgeStatus
from fraud.config import FraudSettings
from fraud.errors import ConflictError, NotFoundError
from fraud.locks import UserLocks, user_locks
from fraud.types import BadgeResult, Clock

log = structlog.get_logger(__name__)

REVOKED_LOW_SCORE = "Risk score dropped below revoke threshold"


@dataclass(frozen=True)
class BadgeState:
    status: BadgeStatus = BadgeStatus.none
    eligible_since: Optional[datetime] = None
    activated_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    revocation_reason: Optional[str] = None


def evaluate_score(
    state: BadgeState,
    overall_score: int,
    account_age_days: Optional[float],
    now: datetime,
    config: FraudSettings,
) -> BadgeState:
    if state.status == BadgeStatus.none:
        old_enough = account_age_days is not None and account_age_days >= config.min_account_age_days
        if overall_score >= config.eligible_threshold and old_enough:
            return replace(state, status=BadgeStatus.eligible, eligible_since=now)
        return state
    if state.status == BadgeStatus.eligible:
        if overall_score < config.revoke_threshold:
            return BadgeState()
        return state
    if state.status == BadgeStatus.active:
        if overall_score < config.revoke_threshold:
            return replace(state, status=BadgeStatus.revoked, revoked_at=now, revocation_reason=REVOKED_LOW_SCORE)
        return state
    return state


def activate(state: BadgeState, now: datetime) -> BadgeState:
    if state.status != BadgeStatus.eligible:
        raise ConflictError(f"badge cannot be activated from {state.status.value!r}", status=state.status.value)
    return replace(state, status=BadgeStatus.active, activated_at=now)


def ban(state: BadgeState, reason: str, now: datetime) -> BadgeState:
    return replace(state, status=BadgeStatus.revoked, revoked_at=now, revocation_reason=(reason or "")[:255] or None)


def clear(state: BadgeState, now: datetime) -> BadgeState:
    return BadgeState()


### Persistence

def load_badge(db: Session, user_id: str, *, for_update: bool = False) -> Optional[UserBadgeStatus]:
    q = db.query(UserBadgeStatus).filter(UserBadgeStatus.user_id == user_id)
    if for_update:
        q = q.with_for_update()
    return q.first()


def state_of(row: Optional[UserBadgeStatus]) -> BadgeState:
    if row is None:
        return BadgeState()
    return BadgeState(
        status=BadgeStatus(row.status),
        eligible_since=row.eligible_since,
        activated_at=row.activated_at,
        revoked_at=row.revoked_at,
        revocation_reason=row.revocation_reason,
    )


def store_badge(
    db: Session,
    user_id: str,
    row: Optional[UserBadgeStatus],
    new: BadgeState,
    *,
    now: datetime,
    badge_type: str,
    cause: str,
) -> UserBadgeStatus:
    old = state_of(row)
    if row is None:
        row = UserBadgeStatus(user_id=user_id, badge_type=badge_type)
    row.status = new.status
    row.eligible_since = new.eligible_since
    row.activated_at = new.activated_at
    row.revoked_at = new.revoked_at
    row.revocation_reason = new.revocation_reason
    row.updated_at = now
    db.add(row)
    if old.status != new.status:
        log.info("badge_transition", user_id=user_id, from_status=old.status.value, to_status=new.status.value, cause=cause)
    return row


def to_result(row: UserBadgeStatus) -> BadgeResult:
    return BadgeResult(
        user_id=row.user_id,
        badge_type=row.badge_type,
        status=BadgeStatus(row.status).value,
        eligible_since=row.eligible_since,
        activated_at=row.activated_at,
        revoked_at=row.revoked_at,
        revocation_reason=row.revocation_reason,
    )


def get_badge_status(db: Session, user_id: str) -> BadgeResult:
    row = load_badge(db, user_id)
    if row is None:
        raise NotFoundError("no badge tracked for user", user_id=user_id)
    return to_result(row)


def activate_badge(
    db: Session,
    user_id: str,
    *,
    clock: Clock,
    config: FraudSettings,
    locks: UserLocks = user_locks,
) -> BadgeResult:
    with locks.hold(user_id):
        try:
            row = load_badge(db, user_id, for_update=True)
            if row is None:
                raise NotFoundError("no badge tracked for user", user_id=user_id)
            now = clock()
            new = activate(state_of(row), now)
            row = store_badge(db, user_id, row, new, now=now, badge_type=config.badge_type, cause="activation")
            db.commit()
        except Exception:
            db.rollback()
            raise
    return to_result(row)
