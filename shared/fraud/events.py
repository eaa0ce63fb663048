"""Event store: append-only follower ledger, follow-edge projection and the
recompute request queue.

Ingestion never scores inline. A new event only enqueues a "recompute user X"
request, so follow/unfollow bursts collapse into one pending row per user.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db_models import (
    FollowerEdge,
    FollowerEvent,
    FollowerEventType,
    ScoreRecomputeRequest,
)
from fraud.config import FraudSettings
from fraud.errors import ValidationError
from fraud.types import Clock, IncomingEvent

log = structlog.get_logger(__name__)


def as_naive_utc(ts: datetime) -> datetime:
    if ts.tzinfo is not None:
        return ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts


def occurred_bucket(ts: datetime, bucket_seconds: int) -> int:
    epoch = ts.replace(tzinfo=timezone.utc).timestamp()
    return int(epoch // bucket_seconds)


def _validate(event: IncomingEvent, now: datetime, config: FraudSettings) -> tuple[str, str, FollowerEventType, datetime]:
    follower = (event.follower_user_id or "").strip()
    followed = (event.followed_user_id or "").strip()
    if not follower or not followed:
        raise ValidationError("follower_user_id and followed_user_id are required")
    if follower == followed:
        raise ValidationError("an account cannot follow itself", user_id=follower)
    try:
        event_type = FollowerEventType(event.event_type)
    except ValueError:
        raise ValidationError(f"unknown event_type {event.event_type!r}") from None
    if event.occurred_at is None:
        raise ValidationError("occurred_at is required")
    occurred_at = as_naive_utc(event.occurred_at)
    if occurred_at > now + timedelta(seconds=config.max_clock_skew_seconds):
        raise ValidationError("occurred_at is in the future", occurred_at=occurred_at.isoformat())
    return follower, followed, event_type, occurred_at


def _find_by_natural_key(db: Session, follower: str, followed: str, event_type: FollowerEventType, bucket: int):
    return (
        db.query(FollowerEvent)
        .filter(FollowerEvent.follower_user_id == follower)
        .filter(FollowerEvent.followed_user_id == followed)
        .filter(FollowerEvent.event_type == event_type)
        .filter(FollowerEvent.occurred_bucket == bucket)
        .first()
    )


def ingest_event(
    db: Session,
    event: IncomingEvent,
    *,
    clock: Clock,
    config: FraudSettings,
) -> tuple[FollowerEvent, bool]:
    """Append one event. Returns ``(row, created)``; duplicates return the stored row.

    Does not commit: the caller owns the transaction.
    """
    now = clock()
    follower, followed, event_type, occurred_at = _validate(event, now, config)
    bucket = occurred_bucket(occurred_at, config.dedupe_bucket_seconds)

    existing = _find_by_natural_key(db, follower, followed, event_type, bucket)
    if existing:
        return existing, False

    latest = (
        db.query(FollowerEvent)
        .filter(FollowerEvent.follower_user_id == follower)
        .filter(FollowerEvent.followed_user_id == followed)
        .order_by(FollowerEvent.occurred_at.desc(), FollowerEvent.id.desc())
        .first()
    )
    if latest and occurred_at < latest.occurred_at:
        raise ValidationError(
            "non-monotonic timestamp for follower pair",
            follower_user_id=follower,
            followed_user_id=followed,
            occurred_at=occurred_at.isoformat(),
            last_occurred_at=latest.occurred_at.isoformat(),
        )

    row = FollowerEvent(
        followed_user_id=followed,
        follower_user_id=follower,
        event_type=event_type,
        occurred_at=occurred_at,
        occurred_bucket=bucket,
        source_metadata=dict(event.source_metadata or {}) or None,
        created_at=now,
    )
    try:
        with db.begin_nested():
            db.add(row)
            db.flush()
    except IntegrityError:
        # concurrent delivery of the same event won the insert
        existing = _find_by_natural_key(db, follower, followed, event_type, bucket)
        if existing is None:
            raise
        return existing, False

    _project_edge(db, row)
    request_recompute(db, followed, clock=clock)
    return row, True


def ingest_events(
    db: Session,
    events: Iterable[IncomingEvent],
    *,
    clock: Clock,
    config: FraudSettings,
) -> list[dict]:
    """Ingest a batch; each element independently lands, dedupes or is rejected."""
    results = []
    created = duplicates = rejected = 0
    for ev in events:
        try:
            row, was_created = ingest_event(db, ev, clock=clock, config=config)
        except ValidationError as e:
            rejected += 1
            results.append({"ok": False, "error": e.message, **e.context})
            continue
        if was_created:
            created += 1
        else:
            duplicates += 1
        results.append({"ok": True, "id": row.id, "created": was_created})
    db.commit()
    log.info("events_ingested", created=created, duplicates=duplicates, rejected=rejected)
    return results


def _project_edge(db: Session, ev: FollowerEvent) -> FollowerEdge:
    edge = (
        db.query(FollowerEdge)
        .filter(FollowerEdge.followed_user_id == ev.followed_user_id)
        .filter(FollowerEdge.follower_user_id == ev.follower_user_id)
        .first()
    )
    is_follow = ev.event_type == FollowerEventType.follow
    if not edge:
        edge = FollowerEdge(
            followed_user_id=ev.followed_user_id,
            follower_user_id=ev.follower_user_id,
            is_active=is_follow,
            first_followed_at=ev.occurred_at if is_follow else None,
            last_event_at=ev.occurred_at,
        )
    else:
        edge.is_active = is_follow
        edge.last_event_at = ev.occurred_at
        if is_follow and edge.first_followed_at is None:
            edge.first_followed_at = ev.occurred_at
    db.add(edge)
    return edge


### Reads used to build detection contexts

def events_for_follower(db: Session, follower_id: str) -> list[FollowerEvent]:
    return (
        db.query(FollowerEvent)
        .filter(FollowerEvent.follower_user_id == follower_id)
        .order_by(FollowerEvent.occurred_at.asc(), FollowerEvent.id.asc())
        .all()
    )


def events_for_target(db: Session, followed_id: str, date_from: Optional[datetime] = None, date_to: Optional[datetime] = None) -> list[FollowerEvent]:
    q = db.query(FollowerEvent).filter(FollowerEvent.followed_user_id == followed_id)
    if date_from is not None:
        q = q.filter(FollowerEvent.occurred_at >= date_from)
    if date_to is not None:
        q = q.filter(FollowerEvent.occurred_at <= date_to)
    return q.order_by(FollowerEvent.occurred_at.asc(), FollowerEvent.id.asc()).all()


def followers_with_events(db: Session, followed_id: str, date_from: datetime, date_to: datetime) -> list[str]:
    rows = (
        db.query(FollowerEvent.follower_user_id)
        .filter(FollowerEvent.followed_user_id == followed_id)
        .filter(FollowerEvent.occurred_at >= date_from)
        .filter(FollowerEvent.occurred_at <= date_to)
        .distinct()
        .order_by(FollowerEvent.follower_user_id.asc())
        .all()
    )
    return [r[0] for r in rows]


def active_followers(db: Session, user_id: str) -> list[str]:
    rows = (
        db.query(FollowerEdge.follower_user_id)
        .filter(FollowerEdge.followed_user_id == user_id)
        .filter(FollowerEdge.is_active.is_(True))
        .order_by(FollowerEdge.follower_user_id.asc())
        .all()
    )
    return [r[0] for r in rows]


def active_following(db: Session, user_id: str) -> list[str]:
    rows = (
        db.query(FollowerEdge.followed_user_id)
        .filter(FollowerEdge.follower_user_id == user_id)
        .filter(FollowerEdge.is_active.is_(True))
        .order_by(FollowerEdge.followed_user_id.asc())
        .all()
    )
    return [r[0] for r in rows]


def affected_users_page(
    db: Session,
    date_from: datetime,
    date_to: datetime,
    *,
    after: Optional[str],
    limit: int,
) -> list[str]:
    """Keyset page of followed users with events in range, ordered by user id.

    Keyset (``followed_user_id > after``) rather than OFFSET so concurrent
    inserts cannot shift page boundaries.
    """
    stmt = (
        select(FollowerEvent.followed_user_id)
        .where(FollowerEvent.occurred_at >= date_from)
        .where(FollowerEvent.occurred_at <= date_to)
        .group_by(FollowerEvent.followed_user_id)
        .order_by(FollowerEvent.followed_user_id.asc())
        .limit(limit)
    )
    if after is not None:
        stmt = stmt.where(FollowerEvent.followed_user_id > after)
    return list(db.scalars(stmt).all())


### Recompute queue

def request_recompute(db: Session, user_id: str, *, clock: Clock) -> None:
    row = db.get(ScoreRecomputeRequest, user_id)
    if row is None:
        db.add(ScoreRecomputeRequest(user_id=user_id, requested_at=clock(), attempts=0))


def claim_recompute_requests(db: Session, limit: int) -> list[ScoreRecomputeRequest]:
    """Pop up to ``limit`` oldest requests. Commits the claim."""
    rows = (
        db.query(ScoreRecomputeRequest)
        .order_by(ScoreRecomputeRequest.requested_at.asc(), ScoreRecomputeRequest.user_id.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
        .all()
    )
    claimed = [
        ScoreRecomputeRequest(user_id=r.user_id, requested_at=r.requested_at, attempts=r.attempts)
        for r in rows
    ]
    for r in rows:
        db.delete(r)
    db.commit()
    return claimed


def requeue(db: Session, request: ScoreRecomputeRequest, *, clock: Clock) -> None:
    row = db.get(ScoreRecomputeRequest, request.user_id)
    if row is None:
        db.add(ScoreRecomputeRequest(user_id=request.user_id, requested_at=clock(), attempts=request.attempts + 1))
    else:
        row.attempts = max(row.attempts, request.attempts + 1)
    db.commit()
