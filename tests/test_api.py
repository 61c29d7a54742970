"""
test_api.py — HTTP surface: internal creation endpoints and their key,
caller identity headers, error envelopes, paging, SMS operations, the
live-push management routes, and health probes.

Run with:
    pytest tests/test_api.py -v
"""

from __future__ import annotations

import httpx
import pytest

from carewatch.app.core.middleware import correlation_id, describe_caller, is_event_stream
from carewatch.app.main import create_app

INTERNAL = {"X-Internal-Api-Key": "test-internal-key"}
COUNSELOR = {"X-User-Id": "10", "X-User-Role": "COUNSELOR"}
GUARDIAN = {"X-User-Id": "20", "X-User-Role": "GUARDIAN"}
ADMIN = {"X-User-Id": "31", "X-User-Role": "ADMIN"}

CRITICAL_BODY = {
    "subjectId": 1,
    "callSessionId": 501,
    "severity": "CRITICAL",
    "category": "HEALTH",
    "title": "호흡 곤란 호소",
    "description": "통화 중 숨이 차다고 반복 언급",
    "dangerKeywords": ["숨", "가슴"],
    "transcriptExcerpt": "숨이 차요",
}


@pytest.fixture
async def client(container):
    app = create_app(container)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def _create(client, container, body=None) -> dict:
    resp = await client.post("/api/internal/emergency-alerts", json=body or CRITICAL_BODY, headers=INTERNAL)
    assert resp.status_code == 201, resp.text
    await container.dispatcher.join()
    return resp.json()


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Internal creation
# ═══════════════════════════════════════════════════════════════════════════

class TestInternalCreate:

    async def test_missing_key(self, client):
        resp = await client.post("/api/internal/emergency-alerts", json=CRITICAL_BODY)
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "UNAUTHENTICATED"

    async def test_wrong_key(self, client):
        resp = await client.post(
            "/api/internal/emergency-alerts", json=CRITICAL_BODY,
            headers={"X-Internal-Api-Key": "nope"},
        )
        assert resp.status_code == 401

    async def test_created(self, client, container, provider):
        data = await _create(client, container)
        assert data["status"] == "PENDING"
        assert data["severity"] == "CRITICAL"
        assert data["subjectId"] == 1
        assert isinstance(data["alertId"], int)
        assert len(provider.sent) == 8

    async def test_blank_title_rejected(self, client):
        body = {**CRITICAL_BODY, "title": "   "}
        resp = await client.post("/api/internal/emergency-alerts", json=body, headers=INTERNAL)
        assert resp.status_code == 422

    async def test_unknown_enum_rejected(self, client):
        body = {**CRITICAL_BODY, "severity": "SEVERE"}
        resp = await client.post("/api/internal/emergency-alerts", json=body, headers=INTERNAL)
        assert resp.status_code == 422

    async def test_unknown_subject(self, client):
        body = {**CRITICAL_BODY, "subjectId": 999}
        resp = await client.post("/api/internal/emergency-alerts", json=body, headers=INTERNAL)
        assert resp.status_code == 404
        error = resp.json()["error"]
        assert error["code"] == "NOT_FOUND"
        assert error["details"]["subject_id"] == 999

    async def test_health_shortcut(self, client):
        resp = await client.post(
            "/api/internal/emergency-alerts/health", json={"subjectId": 1}, headers=INTERNAL,
        )
        assert resp.status_code == 201
        assert resp.json()["title"] == "건강 위험 감지"
        assert resp.json()["severity"] == "CRITICAL"

    @pytest.mark.parametrize("is_critical,severity", [(True, "CRITICAL"), (False, "WARNING")])
    async def test_mental_shortcut(self, client, is_critical, severity):
        resp = await client.post(
            "/api/internal/emergency-alerts/mental",
            json={"subjectId": 2, "isCritical": is_critical},
            headers=INTERNAL,
        )
        assert resp.status_code == 201
        assert resp.json()["category"] == "MENTAL"
        assert resp.json()["severity"] == severity

    async def test_no_response_shortcut(self, client):
        resp = await client.post(
            "/api/internal/emergency-alerts/no-response",
            json={"subjectId": 1, "attemptCount": 3, "lastAttemptTime": "2026-03-02T14:30:00+09:00"},
            headers=INTERNAL,
        )
        assert resp.status_code == 201
        assert resp.json()["title"] == "3회 연속 통화 미응답"

    async def test_no_response_needs_attempts(self, client):
        resp = await client.post(
            "/api/internal/emergency-alerts/no-response",
            json={"subjectId": 1, "attemptCount": 0},
            headers=INTERNAL,
        )
        assert resp.status_code == 422


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Caller identity & lists
# ═══════════════════════════════════════════════════════════════════════════

class TestIdentity:

    async def test_missing_headers(self, client):
        resp = await client.get("/api/emergency-alerts/counselor")
        assert resp.status_code == 401

    async def test_malformed_role(self, client):
        resp = await client.get(
            "/api/emergency-alerts/counselor", headers={"X-User-Id": "10", "X-User-Role": "NURSE"},
        )
        assert resp.status_code == 401

    async def test_wrong_role_for_list(self, client):
        resp = await client.get("/api/emergency-alerts/admin", headers=COUNSELOR)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "ACCESS_DENIED"


class TestLists:

    async def test_counselor_list(self, client, container):
        created = await _create(client, container)
        resp = await client.get("/api/emergency-alerts/counselor", headers=COUNSELOR)
        assert resp.status_code == 200
        body = resp.json()
        assert body["total"] == 1
        assert body["items"][0]["alertId"] == created["alertId"]
        assert body["items"][0]["guardianName"] == "김보호"

    @pytest.mark.parametrize("query", ["page=-1", "size=0", "size=101"])
    async def test_paging_bounds(self, client, query):
        resp = await client.get(f"/api/emergency-alerts/counselor?{query}", headers=COUNSELOR)
        assert resp.status_code == 422

    async def test_pending_and_stats(self, client, container):
        await _create(client, container)
        pending = await client.get("/api/emergency-alerts/counselor/pending", headers=COUNSELOR)
        assert len(pending.json()) == 1
        stats = await client.get("/api/emergency-alerts/counselor/stats", headers=COUNSELOR)
        assert stats.json()["pending"] == 1
        admin_stats = await client.get("/api/emergency-alerts/admin/stats", headers=ADMIN)
        assert admin_stats.json()["total"] == 1

    async def test_guardian_and_admin_lists(self, client, container):
        await _create(client, container)
        guardian = await client.get("/api/emergency-alerts/guardian", headers=GUARDIAN)
        assert guardian.json()["total"] == 1
        admin = await client.get("/api/emergency-alerts/admin?size=5", headers=ADMIN)
        assert admin.json()["size"] == 5
        assert admin.json()["total"] == 1


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Detail, read state, processing
# ═══════════════════════════════════════════════════════════════════════════

class TestDetailAndRead:

    async def test_detail_marks_read(self, client, container):
        created = await _create(client, container)
        count = await client.get("/api/emergency-alerts/unread-count", headers=GUARDIAN)
        assert count.json() == {"count": 1}

        resp = await client.get(f"/api/emergency-alerts/{created['alertId']}", headers=GUARDIAN)
        assert resp.status_code == 200
        assert resp.json()["isRead"] is True

        count = await client.get("/api/emergency-alerts/unread-count", headers=GUARDIAN)
        assert count.json() == {"count": 0}

    async def test_detail_unknown(self, client):
        resp = await client.get("/api/emergency-alerts/9999", headers=COUNSELOR)
        assert resp.status_code == 404

    async def test_unread_list_and_read_all(self, client, container):
        created = await _create(client, container)
        unread = await client.get("/api/emergency-alerts/unread", headers=ADMIN)
        assert [i["alertId"] for i in unread.json()] == [created["alertId"]]

        resp = await client.post("/api/emergency-alerts/read-all", headers=ADMIN)
        assert resp.json() == {"marked": 1}
        assert (await client.get("/api/emergency-alerts/unread", headers=ADMIN)).json() == []

    async def test_mark_one_read(self, client, container):
        created = await _create(client, container)
        resp = await client.post(f"/api/emergency-alerts/{created['alertId']}/read", headers=COUNSELOR)
        assert resp.status_code == 200
        assert resp.json()["isRead"] is True
        assert resp.json()["readAt"] is not None


class TestProcess:

    async def test_resolve_then_conflict(self, client, container):
        created = await _create(client, container)
        url = f"/api/emergency-alerts/{created['alertId']}/process"

        resp = await client.post(url, json={"status": "RESOLVED", "note": "보호자 통화 완료"}, headers=COUNSELOR)
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "RESOLVED"
        assert body["processedById"] == 10
        assert body["resolutionNote"] == "보호자 통화 완료"
        assert body["processedAt"] is not None

        again = await client.post(url, json={"status": "ESCALATED"}, headers=COUNSELOR)
        assert again.status_code == 409
        error = again.json()["error"]
        assert error["code"] == "INVALID_TRANSITION"
        assert error["details"]["current_status"] == "RESOLVED"

    async def test_start(self, client, container):
        created = await _create(client, container)
        resp = await client.post(f"/api/emergency-alerts/{created['alertId']}/start", headers=ADMIN)
        assert resp.status_code == 200
        assert resp.json()["status"] == "IN_PROGRESS"
        assert resp.json()["processedAt"] is None

    async def test_guardian_forbidden(self, client, container):
        created = await _create(client, container)
        resp = await client.post(
            f"/api/emergency-alerts/{created['alertId']}/process",
            json={"status": "RESOLVED"}, headers=GUARDIAN,
        )
        assert resp.status_code == 403

    async def test_pending_target_rejected(self, client, container):
        created = await _create(client, container)
        resp = await client.post(
            f"/api/emergency-alerts/{created['alertId']}/process",
            json={"status": "PENDING"}, headers=COUNSELOR,
        )
        assert resp.status_code == 422


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: SMS operations
# ═══════════════════════════════════════════════════════════════════════════

class TestSmsOperations:

    async def test_delivery_receipt(self, client, container, provider):
        await _create(client, container)
        sid = provider.sent[-1].message_id

        resp = await client.post(
            "/api/internal/sms/status",
            json={"MessageSid": sid, "MessageStatus": "delivered"},
            headers=INTERNAL,
        )
        assert resp.json() == {"messageSid": sid, "matched": True, "status": "DELIVERED"}

    async def test_receipt_for_unknown_message(self, client):
        resp = await client.post(
            "/api/internal/sms/status",
            json={"MessageSid": "SMunknown", "MessageStatus": "delivered"},
            headers=INTERNAL,
        )
        assert resp.json()["matched"] is False

    async def test_receipt_needs_key(self, client):
        resp = await client.post(
            "/api/internal/sms/status", json={"MessageSid": "x", "MessageStatus": "delivered"},
        )
        assert resp.status_code == 401

    async def test_failed_and_resend(self, client, container, provider):
        provider.failing_numbers.add("+821011110010")
        await _create(client, container)

        failed = await client.get("/api/internal/sms/failed", headers=INTERNAL)
        assert failed.json()["count"] == 1
        assert failed.json()["items"][0]["receiverId"] == 10

        provider.failing_numbers.clear()
        resp = await client.post("/api/internal/sms/resend-failed", headers=INTERNAL)
        assert resp.json() == {"queued": 1}
        await container.dispatcher.join()
        assert (await client.get("/api/internal/sms/failed", headers=INTERNAL)).json()["count"] == 0


# ═══════════════════════════════════════════════════════════════════════════
# Section 5: Live push management & health
# ═══════════════════════════════════════════════════════════════════════════

class TestLivePushRoutes:

    async def test_stats(self, client, container):
        container.registry.subscribe(20)
        container.registry.subscribe(20)
        resp = await client.get("/api/sse/stats")
        body = resp.json()
        assert body["connected_users"] == 1
        assert body["total_connections"] == 2

    async def test_force_close(self, client, container):
        conn = container.registry.subscribe(20)
        resp = await client.delete("/api/sse/subscribe", headers=GUARDIAN)
        assert resp.json() == {"userId": 20, "closed": 1}
        assert conn.closed

    async def test_subscribe_during_shutdown(self, client, container):
        container.registry.close_all()
        resp = await client.get("/api/sse/subscribe", headers=GUARDIAN)
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "SERVICE_UNAVAILABLE"


class TestHealth:

    async def test_root(self, client):
        resp = await client.get("/")
        assert "live-push" in resp.json()["modules"]

    async def test_deep_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert {c["name"] for c in body["components"]} == {
            "database", "live_push", "delivery_dispatcher", "sms_provider",
        }

    async def test_probes(self, client):
        assert (await client.get("/health/live")).json() == {"status": "alive"}
        assert (await client.get("/health/ready")).status_code == 200

    async def test_ready_fails_when_registry_closed(self, client, container):
        container.registry.close_all()
        resp = await client.get("/health/ready")
        assert resp.status_code == 503
        assert resp.json()["status"] == "unhealthy"


# ═══════════════════════════════════════════════════════════════════════════
# Section 6: Request middleware
# ═══════════════════════════════════════════════════════════════════════════

class TestRequestMiddleware:

    async def test_request_id_echoed(self, client):
        resp = await client.get("/api/sse/stats", headers={"X-Request-ID": "call-agent.42"})
        assert resp.headers["X-Request-ID"] == "call-agent.42"
        assert resp.headers["X-Process-Time"].endswith("ms")

    async def test_malformed_request_id_replaced(self, client):
        resp = await client.get("/api/sse/stats", headers={"X-Request-ID": "bad id\twith spaces"})
        assert resp.headers["X-Request-ID"] != "bad id\twith spaces"
        assert len(resp.headers["X-Request-ID"]) == 16

    async def test_error_responses_tagged(self, client):
        resp = await client.get("/api/emergency-alerts/9999", headers=COUNSELOR)
        assert resp.status_code == 404
        assert resp.headers["X-Request-ID"]

    def test_stream_detection(self):
        assert is_event_stream("GET", "/api/sse/subscribe")
        assert is_event_stream("GET", "/api/sse/subscribe/")
        assert not is_event_stream("DELETE", "/api/sse/subscribe")
        assert not is_event_stream("GET", "/api/sse/stats")

    def test_caller_description(self):
        assert describe_caller("20", "guardian") == "GUARDIAN:20"
        assert describe_caller(None, "ADMIN") == "anonymous"
        assert correlation_id(None) != correlation_id(None)
