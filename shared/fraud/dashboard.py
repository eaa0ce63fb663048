"""Admin dashboard and fraud trend analytics. Read-only, no locks."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy import and_, distinct, exists, func, or_, select
from sqlalchemy.orm import Session

from db_models import AdminReview, BotDetectionSignal, FollowerEdge, ReviewAction, UserRiskScore
from fraud.config import FraudSettings
from fraud.errors import ValidationError
from fraud.events import as_naive_utc
from fraud.types import (
    REVIEW_STATUSES,
    SCORE_BUCKETS,
    VALID_PERIODS,
    Clock,
    DailyFraudStat,
    DashboardFilter,
    DashboardResult,
    DashboardUser,
    SignalSummary,
    TrendsFilter,
    TrendsResult,
)


def _naive(ts: Optional[datetime]) -> Optional[datetime]:
    return as_naive_utc(ts) if ts is not None else None


def validate_filter(f: DashboardFilter, config: FraudSettings) -> None:
    if f.page < 1:
        raise ValidationError("page must be >= 1", page=f.page)
    if not 1 <= f.page_size <= config.max_page_size:
        raise ValidationError(f"page_size must be between 1 and {config.max_page_size}", page_size=f.page_size)
    for name in ("min_risk_score", "max_risk_score"):
        v = getattr(f, name)
        if v is not None and not 0 <= v <= 100:
            raise ValidationError(f"{name} must be between 0 and 100", **{name: v})
    if f.min_risk_score is not None and f.max_risk_score is not None and f.min_risk_score > f.max_risk_score:
        raise ValidationError("min_risk_score must not exceed max_risk_score")
    if f.review_status is not None and f.review_status not in REVIEW_STATUSES:
        raise ValidationError(f"unknown review_status {f.review_status!r}")
    if any(not (t or "").strip() for t in f.signal_types):
        raise ValidationError("signal_types must not contain empty values")
    if f.from_date is not None and f.to_date is not None and _naive(f.from_date) > _naive(f.to_date):
        raise ValidationError("from_date must not be after to_date")


def _last_action_subquery():
    return (
        select(AdminReview.action)
        .where(AdminReview.user_id == UserRiskScore.user_id)
        .order_by(AdminReview.created_at.desc(), AdminReview.id.desc())
        .limit(1)
        .scalar_subquery()
    )


def _dashboard_query(f: DashboardFilter):
    stmt = select(UserRiskScore)
    if f.min_risk_score is not None:
        stmt = stmt.where(UserRiskScore.overall_score >= f.min_risk_score)
    if f.max_risk_score is not None:
        stmt = stmt.where(UserRiskScore.overall_score <= f.max_risk_score)
    if f.from_date is not None:
        stmt = stmt.where(UserRiskScore.last_calculated_at >= _naive(f.from_date))
    if f.to_date is not None:
        stmt = stmt.where(UserRiskScore.last_calculated_at <= _naive(f.to_date))

    if f.signal_types:
        own = select(BotDetectionSignal.subject_user_id).where(BotDetectionSignal.signal_type.in_(f.signal_types))
        via_followers = (
            select(FollowerEdge.followed_user_id)
            .join(BotDetectionSignal, BotDetectionSignal.subject_user_id == FollowerEdge.follower_user_id)
            .where(FollowerEdge.is_active.is_(True))
            .where(BotDetectionSignal.signal_type.in_(f.signal_types))
        )
        stmt = stmt.where(or_(UserRiskScore.user_id.in_(own), UserRiskScore.user_id.in_(via_followers)))

    if f.review_status == "pending":
        stmt = stmt.where(~exists().where(AdminReview.user_id == UserRiskScore.user_id))
    elif f.review_status is not None:
        stmt = stmt.where(_last_action_subquery() == ReviewAction(f.review_status))
    return stmt


def get_dashboard(db: Session, f: DashboardFilter, config: FraudSettings) -> DashboardResult:
    validate_filter(f, config)
    stmt = _dashboard_query(f)

    total = db.scalar(select(func.count()).select_from(stmt.subquery())) or 0
    rows = db.scalars(
        stmt.order_by(UserRiskScore.overall_score.desc(), UserRiskScore.user_id.asc())
        .offset((f.page - 1) * f.page_size)
        .limit(f.page_size)
    ).all()

    ids = [r.user_id for r in rows]
    signals: dict[str, dict[str, BotDetectionSignal]] = {}
    reviews: dict[str, AdminReview] = {}
    if ids:
        for s in (
            db.query(BotDetectionSignal)
            .filter(BotDetectionSignal.subject_user_id.in_(ids))
            .order_by(BotDetectionSignal.detected_at.asc(), BotDetectionSignal.id.asc())
        ):
            signals.setdefault(s.subject_user_id, {})[s.signal_type] = s
        for r in (
            db.query(AdminReview)
            .filter(AdminReview.user_id.in_(ids))
            .order_by(AdminReview.created_at.asc(), AdminReview.id.asc())
        ):
            reviews[r.user_id] = r

    users = []
    for r in rows:
        latest = signals.get(r.user_id, {})
        review = reviews.get(r.user_id)
        users.append(DashboardUser(
            user_id=r.user_id,
            overall_score=r.overall_score,
            follower_count=r.follower_count,
            bot_follower_count=r.bot_follower_count,
            active_signals=[
                SignalSummary(signal_type=t, confidence_score=s.confidence_score, detected_at=s.detected_at)
                for t, s in sorted(latest.items())
            ],
            last_review_action=ReviewAction(review.action).value if review else None,
            last_reviewed_at=review.created_at if review else None,
            risk_score_calculated_at=r.last_calculated_at,
        ))

    return DashboardResult(
        users=users,
        total_count=total,
        page=f.page,
        page_size=f.page_size,
        total_pages=(total + f.page_size - 1) // f.page_size,
    )


### Trends

def resolve_range(f: TrendsFilter, now: datetime, config: FraudSettings) -> tuple[datetime, datetime]:
    if f.period not in VALID_PERIODS:
        raise ValidationError(f"period must be one of {sorted(VALID_PERIODS)}", period=f.period)
    days = VALID_PERIODS[f.period]
    to_date = _naive(f.to_date) or now
    from_date = _naive(f.from_date) or to_date - timedelta(days=days)
    if from_date > to_date:
        raise ValidationError("from_date must not be after to_date")
    # one daily row per day in range
    if (to_date.date() - from_date.date()).days + 1 > config.max_trend_days:
        raise ValidationError(
            f"range must not exceed {config.max_trend_days} days",
            from_date=from_date.isoformat(),
            to_date=to_date.isoformat(),
        )
    return from_date, to_date


def _bucket(score: int) -> str:
    for label, lo, hi in SCORE_BUCKETS:
        if lo <= score <= hi:
            return label
    return SCORE_BUCKETS[-1][0] if score > 100 else SCORE_BUCKETS[0][0]


def _per_day(db: Session, column, *criteria) -> dict[str, int]:
    day = func.date(column)
    rows = db.execute(select(day, func.count()).where(*criteria).group_by(day)).all()
    return {str(d): int(n) for d, n in rows}


def _per_day_distinct_users(db: Session, *criteria) -> dict[str, int]:
    day = func.date(AdminReview.created_at)
    rows = db.execute(
        select(day, func.count(distinct(AdminReview.user_id))).where(*criteria).group_by(day)
    ).all()
    return {str(d): int(n) for d, n in rows}


def get_trends(db: Session, f: TrendsFilter, *, clock: Clock, config: FraudSettings) -> TrendsResult:
    from_date, to_date = resolve_range(f, clock(), config)

    in_signals = and_(BotDetectionSignal.detected_at >= from_date, BotDetectionSignal.detected_at <= to_date)
    by_type = {
        t: int(n)
        for t, n in db.execute(
            select(BotDetectionSignal.signal_type, func.count())
            .where(in_signals)
            .group_by(BotDetectionSignal.signal_type)
        ).all()
    }

    suspicious = and_(
        UserRiskScore.created_at >= from_date,
        UserRiskScore.created_at <= to_date,
        UserRiskScore.overall_score < config.suspicious_score_threshold,
    )
    new_suspicious = db.scalar(select(func.count()).select_from(UserRiskScore).where(suspicious)) or 0

    in_reviews = and_(AdminReview.created_at >= from_date, AdminReview.created_at <= to_date)
    banned_only = and_(in_reviews, AdminReview.action == ReviewAction.banned)
    banned = db.scalar(select(func.count(distinct(AdminReview.user_id))).where(banned_only)) or 0
    reviewed = db.scalar(select(func.count(distinct(AdminReview.user_id))).where(in_reviews)) or 0

    in_scores = and_(UserRiskScore.last_calculated_at >= from_date, UserRiskScore.last_calculated_at <= to_date)
    avg = db.scalar(select(func.avg(UserRiskScore.overall_score)).where(in_scores))
    distribution = {label: 0 for label, _, _ in SCORE_BUCKETS}
    for score, n in db.execute(
        select(UserRiskScore.overall_score, func.count()).where(in_scores).group_by(UserRiskScore.overall_score)
    ).all():
        distribution[_bucket(int(score))] += int(n)

    signals_per_day = _per_day(db, BotDetectionSignal.detected_at, in_signals)
    suspicious_per_day = _per_day(db, UserRiskScore.created_at, suspicious)
    banned_per_day = _per_day_distinct_users(db, banned_only)

    daily = []
    day: date = from_date.date()
    while day <= to_date.date():
        key = day.isoformat()
        daily.append(DailyFraudStat(
            date=key,
            new_signals=signals_per_day.get(key, 0),
            new_suspicious_accounts=suspicious_per_day.get(key, 0),
            banned_accounts=banned_per_day.get(key, 0),
        ))
        day += timedelta(days=1)

    return TrendsResult(
        period=f.period,
        from_date=from_date,
        to_date=to_date,
        total_bot_signals=sum(by_type.values()),
        signals_by_type=dict(sorted(by_type.items())),
        new_suspicious_accounts=int(new_suspicious),
        banned_accounts=int(banned),
        reviewed_accounts=int(reviewed),
        average_risk_score=round(float(avg), 2) if avg is not None else 0.0,
        risk_score_distribution=distribution,
        daily_stats=daily,
    )
