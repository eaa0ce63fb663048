"""Tests for bot follower notifications."""

from datetime import timedelta

import pytest

from conftest import NOW
from db_models import BotDetectionSignal, BotFollowerNotification
from fraud import notifications
from fraud.errors import NotFoundError


def _signal(db, subject, confidence, signal_type="burst_following"):
    row = BotDetectionSignal(
        subject_user_id=subject,
        signal_type=signal_type,
        confidence_score=confidence,
        detected_at=NOW,
        evidence={},
        fingerprint=f"{signal_type}-{confidence}",
    )
    db.add(row)
    db.commit()
    return row


class TestDispatch:
    """Creating notifications for a flagged account."""

    def test_recipients_are_both_directions(self, db, ingest):
        """Accounts the bot follows and accounts following the bot are notified."""
        ingest("bot", "victim", NOW - timedelta(minutes=3))
        ingest("fan", "bot", NOW - timedelta(minutes=2))

        assert notifications.recipients_for(db, "bot") == ["fan", "victim"]

    def test_dispatch_creates_one_per_recipient(self, db, ingest, clock, config):
        """One notification per recipient, carrying the signal details."""
        ingest("bot", "v1", NOW - timedelta(minutes=3))
        ingest("bot", "v2", NOW - timedelta(minutes=2))
        sig = _signal(db, "bot", 0.9)

        created = notifications.dispatch_for_signal(db, sig, clock=clock, config=config)
        db.commit()

        assert created == 2
        rows = db.query(BotFollowerNotification).order_by(BotFollowerNotification.recipient_user_id).all()
        assert [r.recipient_user_id for r in rows] == ["v1", "v2"]
        assert all(r.bot_follower_id == "bot" and r.signal_type == "burst_following" for r in rows)

    def test_redispatch_is_idempotent(self, db, ingest, clock, config):
        """Dispatching the same signal twice creates nothing new."""
        ingest("bot", "v1", NOW - timedelta(minutes=3))
        sig = _signal(db, "bot", 0.9)
        notifications.dispatch_for_signal(db, sig, clock=clock, config=config)
        db.commit()

        again = notifications.dispatch_for_signal(db, sig, clock=clock, config=config)

        assert again == 0
        assert db.query(BotFollowerNotification).count() == 1

    def test_low_confidence_is_silent(self, db, ingest, clock, config):
        """Signals under the alert threshold notify nobody."""
        ingest("bot", "v1", NOW - timedelta(minutes=3))
        sig = _signal(db, "bot", 0.5)

        assert notifications.dispatch_for_signal(db, sig, clock=clock, config=config) == 0

    def test_unfollowed_accounts_are_not_notified(self, db, ingest, clock, config):
        """Only active relationships count."""
        ingest("bot", "v1", NOW - timedelta(minutes=3))
        ingest("bot", "v1", NOW - timedelta(minutes=2), event_type="unfollow")
        sig = _signal(db, "bot", 0.9)

        assert notifications.dispatch_for_signal(db, sig, clock=clock, config=config) == 0


class TestReadState:
    """Listing and marking notifications read."""

    @pytest.fixture
    def notified(self, db, ingest, clock, config):
        ingest("bot", "v1", NOW - timedelta(minutes=3))
        notifications.dispatch_for_signal(db, _signal(db, "bot", 0.9), clock=clock, config=config)
        db.commit()
        return db.query(BotFollowerNotification).one()

    def test_mark_read_is_idempotent(self, db, service, notified, clock):
        """The first read time is kept."""
        first = service.mark_notification_as_read(db, notified.id).read_at
        clock.advance(hours=1)
        second = service.mark_notification_as_read(db, notified.id).read_at

        assert first == second == NOW

    def test_unread_filter(self, db, service, notified):
        """unread_only hides read notifications."""
        assert len(service.get_user_bot_notifications(db, "v1", unread_only=True)) == 1
        service.mark_notification_as_read(db, notified.id)

        assert service.get_user_bot_notifications(db, "v1", unread_only=True) == []
        assert len(service.get_user_bot_notifications(db, "v1")) == 1

    def test_other_recipient_cannot_mark(self, db, service, notified):
        """A notification is only visible to its recipient."""
        with pytest.raises(NotFoundError):
            service.mark_notification_as_read(db, notified.id, recipient_user_id="someone-else")

    def test_unknown_notification(self, db, service):
        with pytest.raises(NotFoundError):
            service.mark_notification_as_read(db, 9999)
