"""
HealthGate Backend — Security Pipeline Endpoint Tests
=======================================================

What:  Drives the full app (middleware + routes) over HTTPX/ASGITransport
       with a fake clock and in-memory store.

What we test:
    ✅ Headers: X-Request-ID, X-Response-Time, rate-limit and security headers
    ✅ Login policy: 5 failures deny the 6th; successes are not counted
    ✅ Brute force: 21 failed logins across windows block the IP
    ✅ 11 suspicious requests block the IP; the 12th is IP_BLOCKED first
    ✅ Authorization outcomes: 401 AUTH_REQUIRED / AUTH_FAILED, 403, owner access
    ✅ Expired admin token → 401 with the expiry logged, not returned
    ✅ Refresh rotation, logout revocation, forgot-password limit
    ✅ Sanitize mode, oversized bodies, counter-store outage (fail open)
    ✅ Audit record for every exit path, including handler crashes and cancellation
    ✅ +json and missing Content-Type bodies are scanned like application/json
"""

import asyncio
import json
import logging
from unittest.mock import MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

from conftest import CLIENT_IP, PASSWORD
from healthgate.exceptions import StoreError
from healthgate.main import create_app
from healthgate.middleware.pipeline import SecurityPipelineMiddleware
from healthgate.services.counter_store import InMemoryCounterStore
from healthgate.services.rate_limiter import RateLimitKey

LOGIN = "/api/v1/auth/login"


async def login(client, email="patient@example.com", password=PASSWORD):
    return await client.post(LOGIN, json={"email": email, "password": password})


async def drained(app, audit_sink):
    await app.state.audit_trail.drain()
    return audit_sink.records


# ══════════════════════════════════════════════════════════════════════════
# Response headers and envelopes
# ══════════════════════════════════════════════════════════════════════════


class TestResponseShape:

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["counter_store"] == "connected"
        assert body["audit_sink"] == "memory"

    @pytest.mark.asyncio
    async def test_request_id_and_timing_headers(self, client):
        response = await client.get("/health")
        assert len(response.headers["x-request-id"]) == 36
        assert response.headers["x-response-time"].endswith("ms")

    @pytest.mark.asyncio
    async def test_well_formed_request_id_is_echoed(self, client):
        response = await client.get("/health", headers={"X-Request-ID": "trace-abc-12345"})
        assert response.headers["x-request-id"] == "trace-abc-12345"

    @pytest.mark.asyncio
    async def test_malformed_request_id_is_replaced(self, client):
        response = await client.get("/health", headers={"X-Request-ID": "bad id; drop"})
        assert response.headers["x-request-id"] != "bad id; drop"

    @pytest.mark.asyncio
    async def test_security_headers(self, client):
        response = await client.get("/health")
        assert "frame-ancestors 'none'" in response.headers["content-security-policy"]
        assert response.headers["x-frame-options"] == "DENY"
        assert response.headers["x-content-type-options"] == "nosniff"
        assert response.headers["referrer-policy"] == "strict-origin-when-cross-origin"
        assert "strict-transport-security" not in response.headers

    @pytest.mark.asyncio
    async def test_success_envelope(self, client, bearer):
        response = await client.get("/api/v1/auth/me", headers=bearer("patient"))
        body = response.json()
        assert body["success"] is True
        assert body["data"]["id"] == "patient-1"
        assert body["meta"]["requestId"] == response.headers["x-request-id"]
        assert response.headers["x-ratelimit-limit"] == "100"
        assert response.headers["x-ratelimit-remaining"] == "99"

    @pytest.mark.asyncio
    async def test_access_log_line(self, client, caplog):
        with caplog.at_level(logging.INFO, logger="healthgate.access"):
            await client.get("/api/v1/auth/me")
        assert "GET /api/v1/auth/me 401" in caplog.text


# ══════════════════════════════════════════════════════════════════════════
# Rate limiting and brute force
# ══════════════════════════════════════════════════════════════════════════


class TestLoginPolicy:

    @pytest.mark.asyncio
    async def test_sixth_failed_login_is_rate_limited(self, client):
        for _ in range(5):
            response = await login(client, password="wrong-password")
            assert response.status_code == 401
            assert response.json()["code"] == "INVALID_CREDENTIALS"

        response = await login(client, password="wrong-password")
        assert response.status_code == 429
        body = response.json()
        assert body["success"] is False
        assert body["code"] == "RATE_LIMIT_EXCEEDED"
        assert body["retryAfter"] == 900
        assert response.headers["retry-after"] == "900"

    @pytest.mark.asyncio
    async def test_successful_logins_are_not_counted(self, client):
        for _ in range(8):
            response = await login(client)
            assert response.status_code == 200
        assert response.json()["data"]["tokens"]["tokenType"] == "Bearer"

    @pytest.mark.asyncio
    async def test_intervening_success_does_not_reset_failures(self, client, store):
        for _ in range(4):
            assert (await login(client, password="wrong-password")).status_code == 401
        assert (await login(client)).status_code == 200
        assert (await login(client, password="wrong-password")).status_code == 401

        assert (await login(client, password="wrong-password")).status_code == 429

        key = RateLimitKey(scope="bruteforce", ip=CLIENT_IP, discriminator="patient@example.com")
        assert await store.get(key.fingerprint()) == "5"

    @pytest.mark.asyncio
    async def test_other_account_has_its_own_budget(self, client):
        for _ in range(6):
            await login(client, password="wrong-password")
        assert (await login(client, email="doctor@example.com")).status_code == 200

    @pytest.mark.asyncio
    async def test_brute_force_blocks_ip(self, client, clock, app, audit_sink):
        for attempt in range(21):
            if attempt and attempt % 5 == 0:
                clock.advance(900_000)  # next auth window
            response = await login(client, password="wrong-password")
            assert response.status_code == 401

        response = await login(client)
        assert response.status_code == 403
        assert response.json()["code"] == "IP_BLOCKED"

        records = await drained(app, audit_sink)
        assert records[-2].action == "FAILED_LOGIN"
        assert records[-2].details["ip_blocked"] is True
        assert records[-1].action == "IP_BLOCKED"

    @pytest.mark.asyncio
    async def test_forgot_password_limit_and_window_reset(self, client, clock):
        payload = {"email": "patient@example.com"}
        for _ in range(3):
            assert (await client.post("/api/v1/auth/forgot-password", json=payload)).status_code == 202

        response = await client.post("/api/v1/auth/forgot-password", json=payload)
        assert response.status_code == 429
        assert response.json()["retryAfter"] == 3600

        clock.advance(3_600_000)
        assert (await client.post("/api/v1/auth/forgot-password", json=payload)).status_code == 202

    @pytest.mark.asyncio
    async def test_forgot_password_does_not_reveal_accounts(self, client):
        known = await client.post("/api/v1/auth/forgot-password", json={"email": "patient@example.com"})
        unknown = await client.post("/api/v1/auth/forgot-password", json={"email": "nobody@example.com"})
        assert known.status_code == unknown.status_code == 202
        assert known.json()["data"] == unknown.json()["data"]


# ══════════════════════════════════════════════════════════════════════════
# Suspicious input and blocklist
# ══════════════════════════════════════════════════════════════════════════


class TestSuspiciousInput:

    @pytest.mark.asyncio
    async def test_sql_injection_in_body_rejected(self, client, app, audit_sink):
        response = await client.post(
            LOGIN, json={"email": "patient@example.com", "password": "Robert'); DROP TABLE users;--"}
        )
        assert response.status_code == 400
        assert response.json()["code"] == "INPUT_REJECTED"

        records = await drained(app, audit_sink)
        assert records[-1].action == "SUSPICIOUS_ACTIVITY"
        assert records[-1].details["threat"] == "sql_injection"
        assert records[-1].details["location"] == "body.password"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content_type", ["application/vnd.api+json", "application/json; charset=utf-8", None])
    async def test_json_media_types_are_scanned(self, client, content_type):
        headers = {"Content-Type": content_type} if content_type else {}
        request = client.build_request(
            "POST",
            "/api/v1/auth/forgot-password",
            content=b'{"email": "Robert\'); DROP TABLE users;--"}',
            headers=headers,
        )
        if content_type is None:
            request.headers.pop("Content-Type", None)

        response = await client.send(request)

        assert response.status_code == 400
        assert response.json()["code"] == "INPUT_REJECTED"

    @pytest.mark.asyncio
    async def test_sanitize_mode_rewrites_vendor_json(self, test_settings, store, directory, audit_sink, clock):
        config = test_settings.model_copy(update={"input_guard_mode": "sanitize"})
        app = create_app(config=config, store=store, directory=directory, audit_sink=audit_sink, clock_ms=clock)
        transport = ASGITransport(app=app, client=(CLIENT_IP, 50000))
        body = '{"email": "patient@example.com", "password": "%s<script>alert(1)</script>"}' % PASSWORD
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.post(
                LOGIN, content=body, headers={"Content-Type": "application/vnd.api+json"}
            )

        assert response.status_code == 200
        records = await drained(app, audit_sink)
        assert records[-1].details["sanitized"] is True

    @pytest.mark.asyncio
    async def test_eleventh_event_blocks_and_twelfth_is_ip_blocked(self, client, bearer, store):
        for _ in range(11):
            response = await client.get("/api/v1/users/patient-1", params={"file": "../../etc/passwd"})
            assert response.status_code == 400

        response = await client.get("/api/v1/auth/me", headers=bearer("patient"))
        assert response.status_code == 403
        assert response.json() == {"success": False, "message": "Access denied", "code": "IP_BLOCKED"}
        # The rate limiter never saw the blocked request
        assert "x-ratelimit-limit" not in response.headers
        api_key = RateLimitKey(scope="api", ip=CLIENT_IP)
        assert await store.get(api_key.fingerprint()) == "11"

    @pytest.mark.asyncio
    async def test_suspicious_route_param_rejected(self, client, bearer):
        response = await client.get("/api/v1/users/1' OR '1'='1", headers=bearer("admin"))
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_sanitize_mode_cleans_body(self, test_settings, store, directory, audit_sink, clock):
        config = test_settings.model_copy(update={"input_guard_mode": "sanitize"})
        app = create_app(config=config, store=store, directory=directory, audit_sink=audit_sink, clock_ms=clock)
        transport = ASGITransport(app=app, client=(CLIENT_IP, 50000))
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await login(client, password=PASSWORD + "<script>alert(1)</script>")

        assert response.status_code == 200
        records = await drained(app, audit_sink)
        assert records[-1].action == "LOGIN"
        assert records[-1].details["sanitized"] is True

    @pytest.mark.asyncio
    async def test_sanitize_mode_still_rejects_route_params(
        self, test_settings, store, directory, audit_sink, clock, bearer
    ):
        config = test_settings.model_copy(update={"input_guard_mode": "sanitize"})
        app = create_app(config=config, store=store, directory=directory, audit_sink=audit_sink, clock_ms=clock)
        transport = ASGITransport(app=app, client=(CLIENT_IP, 50000))
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/api/v1/users/$(reboot)", headers=bearer("admin"))
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_oversized_body(self, test_settings, store, directory, audit_sink, clock):
        config = test_settings.model_copy(update={"max_body_bytes": 1024})
        app = create_app(config=config, store=store, directory=directory, audit_sink=audit_sink, clock_ms=clock)
        transport = ASGITransport(app=app, client=(CLIENT_IP, 50000))
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.post(LOGIN, json={"email": "patient@example.com", "password": "x" * 2000})
        assert response.status_code == 413
        assert response.json()["code"] == "PAYLOAD_TOO_LARGE"


class TestBlocklistAdmin:

    @pytest.mark.asyncio
    async def test_admin_blocks_and_unblocks(self, client, bearer, app, audit_sink):
        response = await client.post(
            "/api/v1/security/blocked-ips",
            json={"ip": "203.0.113.9", "seconds": 600},
            headers=bearer("admin"),
        )
        assert response.status_code == 201
        assert await app.state.blocklist.is_blocked("203.0.113.9")

        response = await client.delete("/api/v1/security/blocked-ips/203.0.113.9", headers=bearer("admin"))
        assert response.status_code == 200
        assert not await app.state.blocklist.is_blocked("203.0.113.9")

        response = await client.delete("/api/v1/security/blocked-ips/203.0.113.9", headers=bearer("admin"))
        assert response.status_code == 404

        records = await drained(app, audit_sink)
        assert [r.action for r in records] == ["IP_BLOCKED", "IP_UNBLOCKED", "IP_UNBLOCKED"]
        assert records[0].resource_id == "203.0.113.9"
        assert records[0].principal_id == "admin-1"

    @pytest.mark.asyncio
    async def test_admin_cannot_block_own_address(self, client, bearer):
        response = await client.post(
            "/api/v1/security/blocked-ips", json={"ip": CLIENT_IP}, headers=bearer("admin")
        )
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_invalid_ip_is_422(self, client, bearer):
        response = await client.post(
            "/api/v1/security/blocked-ips", json={"ip": "not-an-ip"}, headers=bearer("admin")
        )
        assert response.status_code == 422
        assert response.json()["code"] == "VALIDATION_ERROR"


# ══════════════════════════════════════════════════════════════════════════
# Authentication and authorization
# ══════════════════════════════════════════════════════════════════════════


class TestAuthorization:

    @pytest.mark.asyncio
    async def test_missing_token_is_auth_required(self, client):
        response = await client.get("/api/v1/auth/me")
        assert response.status_code == 401
        assert response.json()["code"] == "AUTH_REQUIRED"

    @pytest.mark.asyncio
    async def test_invalid_token_is_auth_failed(self, client):
        response = await client.get("/api/v1/auth/me", headers={"Authorization": "Bearer garbage"})
        assert response.status_code == 401
        assert response.json()["code"] == "AUTH_FAILED"

    @pytest.mark.asyncio
    async def test_unknown_route_is_deny_by_default(self, client):
        response = await client.get("/api/v1/anything")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_admin_route_allows_admin(self, client, bearer):
        response = await client.post(
            "/api/v1/security/blocked-ips", json={"ip": "198.51.100.7"}, headers=bearer("admin")
        )
        assert response.status_code == 201

    @pytest.mark.asyncio
    async def test_admin_route_with_expired_token(self, client, bearer, clock, caplog, app, audit_sink):
        headers = bearer("admin")
        clock.advance(900_000)

        with caplog.at_level(logging.WARNING, logger="healthgate.middleware.authentication"):
            response = await client.post(
                "/api/v1/security/blocked-ips", json={"ip": "198.51.100.7"}, headers=headers
            )

        assert response.status_code == 401
        body = response.json()
        assert body["code"] == "AUTH_FAILED"
        assert "expired" not in body["message"].lower()
        assert "token_expired" in caplog.text

        records = await drained(app, audit_sink)
        assert records[-1].action == "ACCESS_DENIED"
        assert records[-1].details["auth_failure"] == "token_expired"

    @pytest.mark.asyncio
    async def test_patient_on_admin_route_is_forbidden(self, client, bearer):
        response = await client.post(
            "/api/v1/security/blocked-ips", json={"ip": "198.51.100.7"}, headers=bearer("patient")
        )
        assert response.status_code == 403
        assert response.json()["code"] == "INSUFFICIENT_PERMISSIONS"

    @pytest.mark.asyncio
    async def test_owner_reads_own_profile(self, client, bearer):
        response = await client.get("/api/v1/users/patient-1", headers=bearer("patient"))
        assert response.status_code == 200
        assert response.json()["data"]["email"] == "patient@example.com"

    @pytest.mark.asyncio
    async def test_patient_cannot_read_other_profile(self, client, bearer):
        response = await client.get("/api/v1/users/patient-2", headers=bearer("patient"))
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_doctor_reads_any_profile(self, client, bearer):
        response = await client.get("/api/v1/users/patient-2", headers=bearer("doctor"))
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_unknown_profile_is_404(self, client, bearer):
        response = await client.get("/api/v1/users/nobody", headers=bearer("admin"))
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_deactivated_subject_is_rejected(self, client, bearer, directory):
        headers = bearer("other")
        directory.deactivate("patient-2")
        response = await client.get("/api/v1/auth/me", headers=headers)
        assert response.status_code == 401
        assert response.json()["code"] == "AUTH_FAILED"


class TestTokenEndpoints:

    @pytest.mark.asyncio
    async def test_refresh_is_single_use(self, client):
        tokens = (await login(client)).json()["data"]["tokens"]

        response = await client.post("/api/v1/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
        assert response.status_code == 200
        assert response.json()["data"]["tokens"]["refreshToken"] != tokens["refreshToken"]

        replay = await client.post("/api/v1/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
        assert replay.status_code == 401
        assert replay.json()["code"] == "INVALID_REFRESH_TOKEN"

    @pytest.mark.asyncio
    async def test_logout_revokes_refresh_token(self, client):
        tokens = (await login(client)).json()["data"]["tokens"]
        headers = {"Authorization": f"Bearer {tokens['accessToken']}"}

        response = await client.post(
            "/api/v1/auth/logout", json={"refreshToken": tokens["refreshToken"]}, headers=headers
        )
        assert response.status_code == 200
        assert response.json()["data"]["refreshRevoked"] is True
        assert "cookies" in response.headers["clear-site-data"]

        response = await client.post("/api/v1/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_logout_without_body(self, client, bearer):
        response = await client.post("/api/v1/auth/logout", headers=bearer("patient"))
        assert response.status_code == 200
        assert response.json()["data"]["refreshRevoked"] is False


# ══════════════════════════════════════════════════════════════════════════
# Finalization, audit and store outages
# ══════════════════════════════════════════════════════════════════════════


class FailingStore(InMemoryCounterStore):
    async def get(self, key):
        raise StoreError(context={"operation": "get"})

    async def increment_and_get(self, key, ttl_ms):
        raise StoreError(context={"operation": "increment_and_get"})


class TestFinalization:

    @pytest.mark.asyncio
    async def test_login_audit_record(self, client, app, audit_sink):
        await login(client)
        records = await drained(app, audit_sink)
        record = records[-1]
        assert record.action == "LOGIN"
        assert record.outcome == "success"
        assert record.principal_id == "patient-1"
        assert record.ip == CLIENT_IP
        assert record.http_status == 200

    @pytest.mark.asyncio
    async def test_health_is_not_audited(self, client, app, audit_sink):
        await client.get("/health")
        assert await drained(app, audit_sink) == []

    @pytest.mark.asyncio
    async def test_csp_report_is_audited(self, client, app, audit_sink):
        report = (
            '{"csp-report": {"document-uri": "https://portal.example/", '
            '"violated-directive": "script-src", "blocked-uri": "https://evil.example/x.js"}}'
        )
        response = await client.post(
            "/api/v1/security/csp-violation",
            content=report,
            headers={"Content-Type": "application/csp-report"},
        )
        assert response.status_code == 204

        records = await drained(app, audit_sink)
        assert records[-1].action == "CSP_VIOLATION"
        assert records[-1].details["violated-directive"] == "script-src"

    @pytest.mark.asyncio
    async def test_handler_crash_is_still_audited(self, app, audit_sink, bearer):
        async def boom():
            raise RuntimeError("unexpected")

        app.add_api_route("/api/v1/boom", boom, methods=["GET"])
        transport = ASGITransport(app=app, raise_app_exceptions=False, client=(CLIENT_IP, 50000))
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/api/v1/boom", headers=bearer("patient"))

        assert response.status_code == 500
        assert response.json()["code"] == "INTERNAL_ERROR"
        assert "unexpected" not in response.text

        records = await drained(app, audit_sink)
        assert records[-1].http_status == 500
        assert records[-1].outcome == "failure"
        assert records[-1].principal_id == "patient-1"

    @pytest.mark.asyncio
    async def test_store_outage_fails_open(self, test_settings, directory, audit_sink, clock, bearer):
        error_sink = MagicMock()
        app = create_app(
            config=test_settings,
            store=FailingStore(clock=clock),
            directory=directory,
            audit_sink=audit_sink,
            error_sink=error_sink,
            clock_ms=clock,
        )
        transport = ASGITransport(app=app, client=(CLIENT_IP, 50000))
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/api/v1/auth/me", headers=bearer("patient"))

        assert response.status_code == 200
        records = await drained(app, audit_sink)
        assert records[-1].details["store_unavailable"] == ["blocklist", "rate_limit"]
        assert error_sink.report.call_count == 2
        assert all(isinstance(call.args[0], StoreError) for call in error_sink.report.call_args_list)

    @pytest.mark.asyncio
    async def test_cancelled_request_is_finalized(self, app, store, audit_sink):
        handler_started = asyncio.Event()

        async def slow_handler(scope, receive, send):
            handler_started.set()
            await asyncio.Event().wait()

        middleware = SecurityPipelineMiddleware(slow_handler, app.state.pipeline)
        body = json.dumps({"email": "patient@example.com", "password": PASSWORD}).encode()
        scope = {
            "type": "http",
            "method": "POST",
            "path": LOGIN,
            "query_string": b"",
            "headers": [(b"content-type", b"application/json")],
            "client": (CLIENT_IP, 50000),
        }

        async def receive():
            return {"type": "http.request", "body": body, "more_body": False}

        async def send(message):
            pass

        task = asyncio.create_task(middleware(scope, receive, send))
        await handler_started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        records = await drained(app, audit_sink)
        assert records[-1].http_status == 499
        assert records[-1].details["abandoned"] is True
        # An abandoned login is not a success, so its auth count stays
        key = RateLimitKey(scope="auth", ip=CLIENT_IP, discriminator="patient@example.com")
        assert await store.get(key.fingerprint()) == "1"
