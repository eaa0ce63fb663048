"""Tests for the FastAPI control plane."""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from conftest import NOW
from db_models import BatchAnalysisJob, JobStatus

ADMIN = {"X-Admin-Token": "test-admin-token", "X-Admin-Id": "alice-admin"}


@pytest.fixture
def api(monkeypatch, session_factory, service):
    import main

    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    sent = []

    def _send_task(name, args=None, kwargs=None, **options):
        sent.append((name, kwargs))

    main.app.dependency_overrides[main.get_db] = _get_db
    main.app.dependency_overrides[main.get_service] = lambda: service
    monkeypatch.setattr(main.celery_client, "send_task", _send_task)
    with TestClient(main.app) as client:
        client.sent = sent
        yield client
    main.app.dependency_overrides.clear()


def _event(follower, followed, minutes_ago, event_type="follow"):
    return {
        "follower_user_id": follower,
        "followed_user_id": followed,
        "event_type": event_type,
        "occurred_at": (NOW - timedelta(minutes=minutes_ago)).isoformat(),
    }


# =============================================================================
# Auth and plumbing
# =============================================================================


class TestAuth:
    """Admin authentication."""

    def test_health_is_public(self, api):
        response = api.get("/health")

        assert response.status_code == 200
        assert response.json() == {"ok": True}

    def test_admin_routes_require_credentials(self, api):
        assert api.get("/admin/fraud-dashboard").status_code == 401
        assert api.get("/admin/fraud-dashboard", headers={"X-Admin-Token": "wrong"}).status_code == 401

    def test_cookie_session_after_login(self, api):
        """A form login sets a signed cookie that authorizes later calls."""
        response = api.post("/login", data={"username": "bob-admin", "token": "test-admin-token"})

        assert response.status_code == 200
        assert response.json()["admin_id"] == "bob-admin"
        assert api.get("/admin/fraud-dashboard").status_code == 200

    def test_login_rejects_bad_token(self, api):
        response = api.post("/login", data={"username": "x", "token": "nope"})

        assert response.status_code == 401

    def test_request_id_is_echoed(self, api):
        """A valid X-Request-ID is returned; an invalid one is replaced."""
        ok = api.get("/health", headers={"X-Request-ID": "abc-123"})
        bad = api.get("/health", headers={"X-Request-ID": "not valid!"})

        assert ok.headers["X-Request-ID"] == "abc-123"
        assert bad.headers["X-Request-ID"] != "not valid!"


# =============================================================================
# Ingestion, scores, badges
# =============================================================================


class TestUserEndpoints:
    """Ingestion through to scores and badges."""

    def test_ingest_reports_per_event_outcome(self, api):
        body = {"events": [_event("a", "b", 5), _event("a", "b", 5), _event("c", "c", 4)]}

        response = api.post("/followers/events", json=body, headers=ADMIN)

        assert response.status_code == 200
        data = response.json()
        assert (data["created"], data["duplicates"], data["rejected"]) == (1, 1, 1)

    def test_empty_batch_is_rejected(self, api):
        assert api.post("/followers/events", json={"events": []}, headers=ADMIN).status_code == 422

    def test_risk_score_not_found(self, api):
        response = api.get("/users/nobody/risk-score", headers=ADMIN)

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_profile_sync_then_score(self, api, service, session_factory):
        """A synced profile and a drained queue produce a readable score and badge."""
        created = (NOW - timedelta(days=730)).isoformat()
        api.put(
            "/internal/profiles/u1",
            json={"account_created_at": created, "post_count": 20, "comment_count": 50, "has_avatar": True, "has_bio": True},
            headers=ADMIN,
        )
        api.post("/followers/events", json={"events": [_event("f1", "u1", 10)]}, headers=ADMIN)
        service.drain_recompute_queue(session_factory)

        score = api.get("/users/u1/risk-score", headers=ADMIN).json()
        assert score["overall_score"] == 100
        assert score["badge_status"] == "eligible"

        activated = api.post("/users/u1/badge/activate", headers=ADMIN)
        assert activated.status_code == 200
        assert activated.json()["status"] == "active"
        assert api.post("/users/u1/badge/activate", headers=ADMIN).status_code == 409

    def test_badge_not_found(self, api):
        assert api.get("/users/ghost/badge", headers=ADMIN).status_code == 404


# =============================================================================
# Admin
# =============================================================================


class TestAdminEndpoints:
    """Dashboard and moderation."""

    def test_dashboard_rejects_large_page(self, api):
        response = api.get("/admin/fraud-dashboard", params={"page_size": 101}, headers=ADMIN)

        assert response.status_code == 422
        assert response.json()["error"] == "validation_error"

    def test_dashboard_accepts_comma_separated_signal_types(self, api):
        response = api.get(
            "/admin/fraud-dashboard", params={"signal_types": "burst_following,ip_cluster"}, headers=ADMIN
        )

        assert response.status_code == 200
        assert response.json()["total_count"] == 0

    def test_ban_records_acting_admin(self, api):
        response = api.post("/admin/users/u9/ban", json={"reason": "bot farm"}, headers=ADMIN)

        assert response.status_code == 200
        assert response.json()["admin_id"] == "alice-admin"
        assert response.json()["action"] == "banned"
        assert api.get("/users/u9/badge", headers=ADMIN).json()["status"] == "revoked"

    def test_ban_without_reason(self, api):
        response = api.post("/admin/users/u9/ban", json={}, headers=ADMIN)

        assert response.status_code == 422
        assert api.get("/admin/users/u9/reviews", headers=ADMIN).json()["reviews"] == []

    def test_review_and_clear_without_body(self, api):
        assert api.post("/admin/users/u9/review", headers=ADMIN).status_code == 200
        assert api.post("/admin/users/u9/clear", headers=ADMIN).status_code == 200

        actions = [r["action"] for r in api.get("/admin/users/u9/reviews", headers=ADMIN).json()["reviews"]]
        assert sorted(actions) == ["cleared", "reviewed"]

    def test_trends(self, api):
        response = api.get("/analytics/fraud-trends", params={"period": "24h"}, headers=ADMIN)

        assert response.status_code == 200
        assert response.json()["total_bot_signals"] == 0

    def test_trends_bad_period(self, api):
        assert api.get("/analytics/fraud-trends", params={"period": "2w"}, headers=ADMIN).status_code == 422


# =============================================================================
# Batch jobs
# =============================================================================


class TestBatchEndpoints:
    """Triggering, inspecting and cancelling jobs."""

    def test_trigger_enqueues_task(self, api):
        response = api.post("/followers/batch-analyze", headers=ADMIN)

        assert response.status_code == 200
        job_id = response.json()["job_id"]
        assert response.json()["status"] == "started"
        assert api.sent == [("tasks.fraud_batch_analysis", {"job_id": job_id})]

    def test_inverted_range(self, api, session_factory):
        body = {"date_from": NOW.isoformat(), "date_to": (NOW - timedelta(days=1)).isoformat()}

        response = api.post("/followers/batch-analyze", json=body, headers=ADMIN)

        assert response.status_code == 422
        assert api.sent == []
        with session_factory() as s:
            assert s.query(BatchAnalysisJob).count() == 0

    def test_broker_down_fails_job(self, api, monkeypatch, session_factory):
        import main

        def _down(*args, **kwargs):
            raise ConnectionError("redis unreachable")

        monkeypatch.setattr(main.celery_client, "send_task", _down)

        response = api.post("/followers/batch-analyze", headers=ADMIN)

        assert response.status_code == 503
        with session_factory() as s:
            assert s.query(BatchAnalysisJob).one().status == JobStatus.failed

    def test_status_and_cancel(self, api):
        job_id = api.post("/followers/batch-analyze", headers=ADMIN).json()["job_id"]

        status = api.get(f"/followers/batch-analyze/{job_id}", headers=ADMIN).json()
        cancelled = api.post(f"/followers/batch-analyze/{job_id}/cancel", headers=ADMIN).json()

        assert status["status"] == "started"
        assert cancelled["cancel_requested"] is True

    def test_unknown_job(self, api):
        assert api.get("/followers/batch-analyze/999", headers=ADMIN).status_code == 404


# =============================================================================
# Notifications
# =============================================================================


class TestNotificationEndpoints:
    def test_list_and_read(self, api, service, session_factory, burst_scenario):
        with session_factory() as s:
            job = service.trigger_batch_analysis(s, NOW - timedelta(days=1), NOW)
            job_id = job.id
        service.run_batch_job(session_factory, job_id)

        unread = api.get("/users/target/bot-notifications", params={"unread_only": True}, headers=ADMIN).json()
        assert len(unread["notifications"]) == 10

        first = unread["notifications"][0]["id"]
        read = api.post(f"/notifications/{first}/read", params={"user_id": "target"}, headers=ADMIN)
        assert read.status_code == 200
        assert read.json()["read_at"] is not None

        assert api.post(f"/notifications/{first}/read", params={"user_id": "other"}, headers=ADMIN).status_code == 404
