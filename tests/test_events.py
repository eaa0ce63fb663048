"""Tests for the follower event store and the recompute request queue."""

from datetime import timedelta, timezone

import pytest

from conftest import NOW
from db_models import FollowerEdge, FollowerEvent, ScoreRecomputeRequest
from fraud import events as event_store
from fraud.errors import ValidationError
from fraud.types import IncomingEvent


# =============================================================================
# Ingestion
# =============================================================================


class TestIngestEvent:
    """Append-only ingestion with natural-key dedupe."""

    def test_new_event_is_stored_and_projected(self, db, ingest):
        """A follow creates the ledger row, an active edge and a recompute request."""
        results = ingest("alice", "bob", NOW - timedelta(minutes=1))

        assert results == [{"ok": True, "id": results[0]["id"], "created": True}]
        assert db.query(FollowerEvent).count() == 1
        edge = db.query(FollowerEdge).one()
        assert (edge.follower_user_id, edge.followed_user_id, edge.is_active) == ("alice", "bob", True)
        assert db.get(ScoreRecomputeRequest, "bob") is not None

    def test_redelivery_is_a_duplicate(self, db, ingest):
        """The same event delivered twice is stored once and reports the same id."""
        at = NOW - timedelta(minutes=1)
        first = ingest("alice", "bob", at)[0]
        second = ingest("alice", "bob", at)[0]

        assert second == {"ok": True, "id": first["id"], "created": False}
        assert db.query(FollowerEvent).count() == 1

    def test_same_second_is_same_bucket(self, db, ingest):
        """Sub-second jitter from collectors lands on the same natural key."""
        at = NOW.replace(microsecond=100) - timedelta(minutes=1)
        ingest("alice", "bob", at)
        result = ingest("alice", "bob", at.replace(microsecond=900))[0]

        assert result["created"] is False

    def test_unfollow_deactivates_edge(self, db, ingest):
        """Unfollow after follow leaves the edge inactive but keeps both events."""
        ingest("alice", "bob", NOW - timedelta(minutes=2))
        ingest("alice", "bob", NOW - timedelta(minutes=1), event_type="unfollow")

        assert db.query(FollowerEvent).count() == 2
        assert db.query(FollowerEdge).one().is_active is False
        assert event_store.active_followers(db, "bob") == []

    def test_timezone_aware_timestamps_are_normalized(self, db, service):
        """Aware datetimes are stored as naive UTC."""
        aware = (NOW - timedelta(hours=1)).replace(tzinfo=timezone.utc).astimezone(timezone(timedelta(hours=5)))
        service.ingest_events(db, [IncomingEvent("alice", "bob", "follow", aware)])

        assert db.query(FollowerEvent).one().occurred_at == NOW - timedelta(hours=1)


class TestIngestValidation:
    """Bad events are rejected individually; the rest of the batch still lands."""

    @pytest.mark.parametrize(
        "event",
        [
            IncomingEvent("", "bob", "follow", NOW),
            IncomingEvent("alice", "alice", "follow", NOW),
            IncomingEvent("alice", "bob", "block", NOW),
            IncomingEvent("alice", "bob", "follow", None),
            IncomingEvent("alice", "bob", "follow", NOW + timedelta(hours=1)),
        ],
        ids=["missing-follower", "self-follow", "unknown-type", "no-timestamp", "future"],
    )
    def test_invalid_event_is_rejected(self, db, service, event):
        """Each malformed event is reported with ok=False and stores nothing."""
        results = service.ingest_events(db, [event])

        assert results[0]["ok"] is False
        assert results[0]["error"]
        assert db.query(FollowerEvent).count() == 0

    def test_non_monotonic_pair_is_rejected(self, db, ingest):
        """An event older than the pair's latest event is refused."""
        ingest("alice", "bob", NOW - timedelta(minutes=1))
        result = ingest("alice", "bob", NOW - timedelta(minutes=5), event_type="unfollow")[0]

        assert result["ok"] is False
        assert "non-monotonic" in result["error"]
        assert db.query(FollowerEdge).one().is_active is True

    def test_mixed_batch(self, db, service):
        """Valid events in a batch land even when neighbours are rejected."""
        results = service.ingest_events(db, [
            IncomingEvent("a1", "bob", "follow", NOW - timedelta(minutes=3)),
            IncomingEvent("a1", "a1", "follow", NOW),
            IncomingEvent("a2", "bob", "follow", NOW - timedelta(minutes=2)),
        ])

        assert [r["ok"] for r in results] == [True, False, True]
        assert event_store.active_followers(db, "bob") == ["a1", "a2"]

    def test_ingest_event_raises_for_single_call(self, db, clock, config):
        """The single-event API raises instead of collecting the error."""
        with pytest.raises(ValidationError):
            event_store.ingest_event(db, IncomingEvent("a", "a", "follow", NOW), clock=clock, config=config)


# =============================================================================
# Reads
# =============================================================================


class TestReads:
    """Queries used by the detector, notifications and the batch runner."""

    def test_follow_graph_reads(self, db, ingest):
        """active_followers / active_following follow edge state."""
        ingest("a", "b", NOW - timedelta(minutes=5))
        ingest("a", "c", NOW - timedelta(minutes=4))
        ingest("d", "a", NOW - timedelta(minutes=3))

        assert event_store.active_following(db, "a") == ["b", "c"]
        assert event_store.active_followers(db, "a") == ["d"]

    def test_affected_users_keyset_pages(self, db, ingest):
        """Pages are ordered by user id and resume after the cursor."""
        for target in ["u3", "u1", "u2"]:
            ingest("f", target, NOW - timedelta(minutes=10))
        window = (NOW - timedelta(hours=1), NOW)

        first = event_store.affected_users_page(db, *window, after=None, limit=2)
        second = event_store.affected_users_page(db, *window, after=first[-1], limit=2)

        assert first == ["u1", "u2"]
        assert second == ["u3"]

    def test_affected_users_respects_window(self, db, ingest):
        """Events outside the window do not make a user affected."""
        ingest("f", "old", NOW - timedelta(days=3))
        ingest("f", "new", NOW - timedelta(minutes=1))

        assert event_store.affected_users_page(db, NOW - timedelta(hours=1), NOW, after=None, limit=10) == ["new"]

    def test_followers_with_events(self, db, ingest):
        """Distinct follower ids with events on the target in range."""
        ingest("f2", "t", NOW - timedelta(minutes=5))
        ingest("f1", "t", NOW - timedelta(minutes=4))
        ingest("f1", "t", NOW - timedelta(minutes=3), event_type="unfollow")

        assert event_store.followers_with_events(db, "t", NOW - timedelta(hours=1), NOW) == ["f1", "f2"]


# =============================================================================
# Recompute queue
# =============================================================================


class TestRecomputeQueue:
    """Coalescing "recompute user X" requests."""

    def test_bursts_coalesce_to_one_request(self, db, ingest):
        """Many events for one followed user leave a single pending request."""
        for i in range(5):
            ingest(f"f{i}", "bob", NOW - timedelta(minutes=10 - i))

        assert db.query(ScoreRecomputeRequest).filter_by(user_id="bob").count() == 1

    def test_claim_removes_and_returns_oldest_first(self, db, clock):
        """Claimed requests leave the table; order is by request time."""
        event_store.request_recompute(db, "late", clock=lambda: NOW)
        event_store.request_recompute(db, "early", clock=lambda: NOW - timedelta(minutes=1))
        db.commit()

        claimed = event_store.claim_recompute_requests(db, limit=10)

        assert [r.user_id for r in claimed] == ["early", "late"]
        assert db.query(ScoreRecomputeRequest).count() == 0

    def test_requeue_counts_attempts(self, db, clock):
        """A requeued request carries its attempt count forward."""
        event_store.request_recompute(db, "u", clock=clock)
        db.commit()
        [req] = event_store.claim_recompute_requests(db, limit=1)

        event_store.requeue(db, req, clock=clock)

        assert db.get(ScoreRecomputeRequest, "u").attempts == 1
