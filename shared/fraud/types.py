"""Value objects passed between the engine and its callers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

Clock = Callable[[], datetime]

VALID_PERIODS = {"24h": 1, "7d": 7, "30d": 30, "90d": 90}
REVIEW_STATUSES = {"pending", "reviewed", "banned", "cleared"}
SCORE_BUCKETS = [("0-20", 0, 20), ("21-40", 21, 40), ("41-60", 41, 60), ("61-80", 61, 80), ("81-100", 81, 100)]


@dataclass(frozen=True)
class IncomingEvent:
    follower_user_id: str
    followed_user_id: str
    event_type: str
    occurred_at: Optional[datetime]
    source_metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProfileSnapshot:
    user_id: str
    account_created_at: Optional[datetime] = None
    post_count: Optional[int] = None
    comment_count: Optional[int] = None
    has_avatar: Optional[bool] = None
    has_bio: Optional[bool] = None

    @property
    def is_complete(self) -> bool:
        return None not in (self.account_created_at, self.post_count, self.has_avatar, self.has_bio)

    def age_days(self, as_of: datetime) -> Optional[float]:
        if self.account_created_at is None:
            return None
        return max(0.0, (as_of - self.account_created_at).total_seconds() / 86400.0)


@dataclass(frozen=True)
class RiskScoreResult:
    user_id: str
    overall_score: int
    follower_authenticity_score: int
    engagement_quality_score: int
    account_age_factor: float
    badge_status: str
    follower_count: int
    bot_follower_count: int
    calculation_version: str
    last_calculated_at: datetime


@dataclass(frozen=True)
class BadgeResult:
    user_id: str
    badge_type: str
    status: str
    eligible_since: Optional[datetime]
    activated_at: Optional[datetime]
    revoked_at: Optional[datetime]
    revocation_reason: Optional[str]


@dataclass
class DashboardFilter:
    min_risk_score: Optional[int] = None
    max_risk_score: Optional[int] = None
    signal_types: list[str] = field(default_factory=list)
    review_status: Optional[str] = None
    from_date: Optional[datetime] = None
    to_date: Optional[datetime] = None
    page: int = 1
    page_size: int = 20


@dataclass(frozen=True)
class SignalSummary:
    signal_type: str
    confidence_score: float
    detected_at: datetime


@dataclass(frozen=True)
class DashboardUser:
    user_id: str
    overall_score: int
    follower_count: int
    bot_follower_count: int
    active_signals: list[SignalSummary]
    last_review_action: Optional[str]
    last_reviewed_at: Optional[datetime]
    risk_score_calculated_at: datetime


@dataclass(frozen=True)
class DashboardResult:
    users: list[DashboardUser]
    total_count: int
    page: int
    page_size: int
    total_pages: int


@dataclass
class TrendsFilter:
    period: str = "7d"
    from_date: Optional[datetime] = None
    to_date: Optional[datetime] = None


@dataclass(frozen=True)
class DailyFraudStat:
    date: str
    new_signals: int
    new_suspicious_accounts: int
    banned_accounts: int


@dataclass(frozen=True)
class TrendsResult:
    period: str
    from_date: datetime
    to_date: datetime
    total_bot_signals: int
    signals_by_type: dict[str, int]
    new_suspicious_accounts: int
    banned_accounts: int
    reviewed_accounts: int
    average_risk_score: float
    risk_score_distribution: dict[str, int]
    daily_stats: list[DailyFraudStat]
