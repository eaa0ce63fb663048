"""Pytest configuration and fixtures."""

from __future__ import annotations

import os

# must be set before main / tasks are imported anywhere
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("DB_LOG_ENABLED", "false")
os.environ.setdefault("CREATE_TABLES_ON_STARTUP", "false")
os.environ["FRAUD_POLICY_FILE"] = ""
os.environ["ADMIN_TOKEN"] = "test-admin-token"
os.environ["SESSION_SECRET"] = "test-session-secret"

from datetime import datetime, timedelta
from typing import Callable, Generator, Optional

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from db_models import AccountProfile, Base, UserRiskScore
from fraud.config import FraudSettings
from fraud.locks import KeyedLock
from fraud.service import FraudService
from fraud.types import IncomingEvent

NOW = datetime(2024, 6, 1, 12, 0, 0)


class FakeClock:
    """Controllable naive-UTC clock."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite so every session gets its own connection (batch runs use several)."""
    eng = create_engine(
        f"sqlite:///{tmp_path / 'fraud.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    # pysqlite needs explicit BEGIN for SAVEPOINT (begin_nested) to work
    @event.listens_for(eng, "connect")
    def _on_connect(dbapi_conn, _record):
        dbapi_conn.isolation_level = None
        cur = dbapi_conn.cursor()
        cur.execute("PRAGMA journal_mode=WAL")
        cur.close()

    @event.listens_for(eng, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


# =============================================================================
# Engine wiring
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> FraudSettings:
    return FraudSettings(
        batch_workers=1,
        batch_retry_initial_seconds=0,
        batch_retry_max_seconds=0,
    )


@pytest.fixture
def service(config, clock) -> FraudService:
    return FraudService(config=config, clock=clock, locks=KeyedLock())


# =============================================================================
# Data builders
# =============================================================================


@pytest.fixture
def ingest(db, service) -> Callable[..., list[dict]]:
    """ingest(follower, followed, at, event_type="follow", ip=None) -> results."""

    def _ingest(follower: str, followed: str, at: datetime, event_type: str = "follow", ip: Optional[str] = None):
        meta = {"ip_address": ip} if ip else {}
        return service.ingest_events(db, [IncomingEvent(follower, followed, event_type, at, meta)])

    return _ingest


@pytest.fixture
def make_profile(db) -> Callable[..., AccountProfile]:
    def _make(
        user_id: str,
        *,
        created_at: Optional[datetime] = None,
        age_days: Optional[float] = None,
        posts: Optional[int] = 0,
        comments: Optional[int] = 0,
        avatar: Optional[bool] = True,
        bio: Optional[bool] = True,
    ) -> AccountProfile:
        if created_at is None and age_days is not None:
            created_at = NOW - timedelta(days=age_days)
        row = AccountProfile(
            user_id=user_id,
            account_created_at=created_at,
            post_count=posts,
            comment_count=comments,
            has_avatar=avatar,
            has_bio=bio,
            synced_at=NOW,
        )
        db.merge(row)
        db.commit()
        return row

    return _make


@pytest.fixture
def make_score(db) -> Callable[..., UserRiskScore]:
    """Insert a score row directly, for dashboard/review tests that don't need the scorer."""

    def _make(user_id: str, overall: int, *, at: datetime = NOW, created_at: Optional[datetime] = None, followers: int = 0, bots: int = 0):
        row = UserRiskScore(
            user_id=user_id,
            overall_score=overall,
            follower_authenticity_score=overall,
            engagement_quality_score=overall,
            account_age_factor=1.0,
            calculation_version="test",
            follower_count=followers,
            bot_follower_count=bots,
            last_calculated_at=at,
            created_at=created_at or at,
        )
        db.add(row)
        db.commit()
        return row

    return _make


@pytest.fixture
def burst_scenario(ingest, make_profile):
    """Ten accounts created within one minute all follow "target" within a minute.

    The target itself is an established, active account.
    """
    make_profile("target", age_days=730, posts=20, comments=50)
    bots = [f"bot{i:02d}" for i in range(10)]
    base = NOW - timedelta(hours=2)
    for i, bot in enumerate(bots):
        make_profile(bot, created_at=base + timedelta(seconds=i * 5), posts=0, comments=0)
        ingest(bot, "target", base + timedelta(minutes=5, seconds=i * 3))
    return {"target": "target", "bots": bots, "base": base}
