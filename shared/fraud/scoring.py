"""Composite per-user risk score.

Higher scores mean a more authentic account. Three sub-scores feed a
weighted composite:

- follower_authenticity: 100 * (1 - mean bot probability of current followers)
- engagement_quality: own activity, discounted by the share of bot followers
- account_age_factor: age / full_trust_age_days, clamped to [0, 1]

A follower's bot probability is a noisy-OR over its latest signal of each
type, weighted per type. Raising any confidence can only raise that
probability, so a stronger negative signal never raises the overall score.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Mapping, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db_models import BotDetectionSignal, UserRiskScore
from fraud import badges
from fraud import events as event_store
from fraud.config import FraudSettings
from fraud.errors import NotFoundError, TransientStoreError, translate_db_error
from fraud.locks import UserLocks, user_locks
from fraud.profiles import ProfileReader
from fraud.types import Clock, ProfileSnapshot, RiskScoreResult

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class FollowerEvidence:
    follower_id: str
    confidences: Mapping[str, float] = field(default_factory=dict)  # latest confidence per signal type


@dataclass(frozen=True)
class ScoreInputs:
    user_id: str
    profile: Optional[ProfileSnapshot]
    followers: tuple[FollowerEvidence, ...]
    as_of: datetime


@dataclass(frozen=True)
class RiskComputation:
    overall_score: int
    follower_authenticity_score: int
    engagement_quality_score: int
    account_age_factor: float
    follower_count: int
    bot_follower_count: int


def _clamp(x: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, x))


def bot_probability(confidences: Mapping[str, float], config: FraudSettings) -> float:
    keep = 1.0
    for signal_type in sorted(confidences):
        c = _clamp(confidences[signal_type], 0.0, 1.0)
        keep *= 1.0 - config.signal_weight(signal_type) * c
    return _clamp(1.0 - keep, 0.0, 1.0)


def _activity(profile: Optional[ProfileSnapshot], config: FraudSettings) -> float:
    if profile is None:
        return config.unknown_activity_score
    parts = []
    if profile.post_count is not None:
        parts.append(min(1.0, profile.post_count / config.target_posts))
    if profile.comment_count is not None:
        parts.append(min(1.0, profile.comment_count / config.target_comments))
    if not parts:
        return config.unknown_activity_score
    return sum(parts) / len(parts)


def account_age_factor(profile: Optional[ProfileSnapshot], as_of: datetime, config: FraudSettings) -> float:
    age = profile.age_days(as_of) if profile else None
    if age is None:
        return config.unknown_age_factor
    return _clamp(age / config.full_trust_age_days, 0.0, 1.0)


def compute_risk(inputs: ScoreInputs, config: FraudSettings) -> RiskComputation:
    """Pure scoring function; same inputs always give the same result."""
    followers = sorted(inputs.followers, key=lambda f: f.follower_id)
    probs = [bot_probability(f.confidences, config) for f in followers]
    bot_fraction = sum(probs) / len(probs) if probs else 0.0

    authenticity = _clamp(100.0 * (1.0 - bot_fraction), 0.0, 100.0)
    engagement = _clamp(
        100.0 * _activity(inputs.profile, config) * (1.0 - bot_fraction * config.engagement_bot_penalty),
        0.0,
        100.0,
    )
    age_factor = account_age_factor(inputs.profile, inputs.as_of, config)

    total_w = config.weight_authenticity + config.weight_engagement + config.weight_age
    overall = (
        config.weight_authenticity * authenticity
        + config.weight_engagement * engagement
        + config.weight_age * age_factor * 100.0
    ) / total_w

    return RiskComputation(
        overall_score=int(round(_clamp(overall, 0.0, 100.0))),
        follower_authenticity_score=int(round(authenticity)),
        engagement_quality_score=int(round(engagement)),
        account_age_factor=round(age_factor, 4),
        follower_count=len(followers),
        bot_follower_count=sum(1 for p in probs if p >= config.bot_follower_confidence),
    )


def latest_confidences(db: Session, subject_ids: list[str]) -> dict[str, dict[str, float]]:
    """Most recent confidence per (subject, signal_type); older signals are superseded."""
    out: dict[str, dict[str, float]] = {}
    for i in range(0, len(subject_ids), 500):
        rows = (
            db.query(BotDetectionSignal)
            .filter(BotDetectionSignal.subject_user_id.in_(subject_ids[i:i + 500]))
            .order_by(BotDetectionSignal.detected_at.asc(), BotDetectionSignal.id.asc())
            .all()
        )
        for r in rows:
            out.setdefault(r.subject_user_id, {})[r.signal_type] = float(r.confidence_score)
    return out


def load_inputs(db: Session, user_id: str, *, profiles: ProfileReader, as_of: datetime) -> ScoreInputs:
    follower_ids = event_store.active_followers(db, user_id)
    conf = latest_confidences(db, follower_ids)
    return ScoreInputs(
        user_id=user_id,
        profile=profiles.get_profile(db, user_id),
        followers=tuple(FollowerEvidence(fid, conf.get(fid, {})) for fid in follower_ids),
        as_of=as_of,
    )


def recompute(
    db: Session,
    user_id: str,
    *,
    profiles: ProfileReader,
    clock: Clock,
    config: FraudSettings,
    locks: UserLocks = user_locks,
) -> UserRiskScore:
    """Recompute and upsert one user's score, then consult the badge manager.

    One transaction. A recomputation that started before the stored row was
    last written is stale and leaves the row alone.
    """
    started = clock()
    with locks.hold(user_id):
        try:
            row = (
                db.query(UserRiskScore)
                .filter(UserRiskScore.user_id == user_id)
                .with_for_update()
                .first()
            )
            if row is not None and row.last_calculated_at > started:
                log.info("stale_recompute_skipped", user_id=user_id)
                db.rollback()
                return row

            inputs = load_inputs(db, user_id, profiles=profiles, as_of=started)
            comp = compute_risk(inputs, config)

            if row is None:
                row = UserRiskScore(user_id=user_id, created_at=started)
            row.overall_score = comp.overall_score
            row.follower_authenticity_score = comp.follower_authenticity_score
            row.engagement_quality_score = comp.engagement_quality_score
            row.account_age_factor = comp.account_age_factor
            row.follower_count = comp.follower_count
            row.bot_follower_count = comp.bot_follower_count
            row.calculation_version = config.calculation_version
            row.last_calculated_at = started
            try:
                with db.begin_nested():
                    db.add(row)
                    db.flush()
            except IntegrityError as e:
                # another process inserted the first row for this user
                raise TransientStoreError("concurrent first score insert", user_id=user_id) from e

            badge_row = badges.load_badge(db, user_id, for_update=True)
            age_days = inputs.profile.age_days(started) if inputs.profile else None
            new_state = badges.evaluate_score(badges.state_of(badge_row), comp.overall_score, age_days, started, config)
            badges.store_badge(
                db, user_id, badge_row, new_state,
                now=started, badge_type=config.badge_type, cause="score_recompute",
            )
            db.commit()
        except Exception as e:
            db.rollback()
            err = translate_db_error(e)
            if err is e:
                raise
            raise err from e

    log.info(
        "risk_score_recomputed",
        user_id=user_id,
        overall_score=comp.overall_score,
        followers=comp.follower_count,
        bot_followers=comp.bot_follower_count,
    )
    return row


def get_risk_score(db: Session, user_id: str) -> RiskScoreResult:
    row = db.query(UserRiskScore).filter(UserRiskScore.user_id == user_id).first()
    if row is None:
        raise NotFoundError("risk score not computed yet", user_id=user_id)
    badge = badges.load_badge(db, user_id)
    return RiskScoreResult(
        user_id=row.user_id,
        overall_score=row.overall_score,
        follower_authenticity_score=row.follower_authenticity_score,
        engagement_quality_score=row.engagement_quality_score,
        account_age_factor=row.account_age_factor,
        badge_status=badges.state_of(badge).status.value,
        follower_count=row.follower_count,
        bot_follower_count=row.bot_follower_count,
        calculation_version=row.calculation_version,
        last_calculated_at=row.last_calculated_at,
    )
