"""Tests for the authenticity badge lifecycle."""

from datetime import timedelta

import pytest

from conftest import NOW
from db_models import BadgeStatus, BotDetectionSignal
from fraud import badges
from fraud.badges import BadgeState
from fraud.errors import ConflictError, NotFoundError


# =============================================================================
# State machine
# =============================================================================


class TestEvaluateScore:
    """Automatic transitions driven by recomputed scores."""

    def test_none_to_eligible(self, config):
        """High score on an old account becomes eligible."""
        new = badges.evaluate_score(BadgeState(), 85, 400, NOW, config)

        assert new.status == BadgeStatus.eligible
        assert new.eligible_since == NOW

    def test_young_account_stays_none(self, config):
        """Score alone is not enough without account age."""
        assert badges.evaluate_score(BadgeState(), 95, 10, NOW, config).status == BadgeStatus.none

    def test_unknown_age_stays_none(self, config):
        """Unknown account age never qualifies."""
        assert badges.evaluate_score(BadgeState(), 95, None, NOW, config).status == BadgeStatus.none

    def test_eligible_falls_back_to_none(self, config):
        """An eligible badge that was never activated resets on a low score."""
        state = BadgeState(status=BadgeStatus.eligible, eligible_since=NOW)

        assert badges.evaluate_score(state, 30, 400, NOW, config) == BadgeState()

    def test_active_revoked_below_threshold(self, config):
        """An active badge is revoked with a recorded reason when the score drops."""
        state = BadgeState(status=BadgeStatus.active, activated_at=NOW)

        new = badges.evaluate_score(state, 39, 400, NOW, config)

        assert new.status == BadgeStatus.revoked
        assert new.revocation_reason == badges.REVOKED_LOW_SCORE

    def test_active_kept_between_thresholds(self, config):
        """Scores between revoke and eligible thresholds keep the badge (hysteresis)."""
        state = BadgeState(status=BadgeStatus.active, activated_at=NOW)

        assert badges.evaluate_score(state, 50, 400, NOW, config) == state

    def test_revoked_is_sticky(self, config):
        """A perfect score does not lift a revocation."""
        state = BadgeState(status=BadgeStatus.revoked, revoked_at=NOW, revocation_reason="x")

        assert badges.evaluate_score(state, 100, 1000, NOW, config) == state

    def test_activate_requires_eligible(self):
        """Only an eligible badge can be activated."""
        with pytest.raises(ConflictError):
            badges.activate(BadgeState(), NOW)

    def test_ban_and_clear(self):
        """Ban revokes from any state; clear resets to none."""
        banned = badges.ban(BadgeState(status=BadgeStatus.eligible), "spam ring", NOW)

        assert banned.status == BadgeStatus.revoked
        assert banned.revocation_reason == "spam ring"
        assert badges.clear(banned, NOW) == BadgeState()


# =============================================================================
# Persistence and activation
# =============================================================================


class TestBadgeService:
    """Badge reads and explicit activation."""

    def test_activate_eligible_badge(self, db, service, make_profile, clock):
        """Eligible -> active through explicit activation."""
        make_profile("u", age_days=730, posts=20, comments=50)
        service.recompute_user(db, "u")
        clock.advance(hours=1)

        result = service.activate_badge(db, "u")

        assert result.status == "active"
        assert result.activated_at == NOW + timedelta(hours=1)

    def test_activate_without_badge_row(self, db, service):
        """Unknown user cannot activate."""
        with pytest.raises(NotFoundError):
            service.activate_badge(db, "ghost")

    def test_activate_twice_conflicts(self, db, service, make_profile):
        """An active badge cannot be activated again."""
        make_profile("u", age_days=730, posts=20, comments=50)
        service.recompute_user(db, "u")
        service.activate_badge(db, "u")

        with pytest.raises(ConflictError):
            service.activate_badge(db, "u")

    def test_score_drop_revokes_active_badge(self, db, service, make_profile, ingest, clock):
        """After activation, a flood of bot followers revokes the badge."""
        make_profile("u", age_days=730, posts=20, comments=50)
        service.recompute_user(db, "u")
        service.activate_badge(db, "u")

        for i in range(10):
            ingest(f"b{i}", "u", NOW - timedelta(minutes=30 - i))
            for t in ("burst_following", "ip_cluster", "rapid_follows"):
                db.add(BotDetectionSignal(
                    subject_user_id=f"b{i}", signal_type=t, confidence_score=1.0,
                    detected_at=NOW, evidence={}, fingerprint=t,
                ))
        db.commit()
        clock.advance(minutes=1)
        service.recompute_user(db, "u")

        badge = service.get_user_badge_status(db, "u")
        assert badge.status == "revoked"
        assert badge.revocation_reason == badges.REVOKED_LOW_SCORE
