"""Tests for the FastAPI admission dependency and its 429 contract."""

import math

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from app.adapters.rate_limit.base import RateLimitPolicy
from app.core.auth import verify_api_key
from app.core.config import settings
from app.core.exception_handlers import setup_exception_handlers
from app.core.logging import hash_identifier
from app.core.rate_limit import (
    API_POLICY,
    AUTH_POLICY,
    CREATE_ACCOUNT_POLICY,
    EMAIL_POLICY,
    GENERAL_POLICY,
    PASSWORD_RESET_POLICY,
    UPLOAD_POLICY,
    admin_ip_rate_limit,
    api_rate_limit,
    auth_rate_limit,
    create_account_rate_limit,
    custom_rate_limit,
    email_rate_limit,
    general_rate_limit,
    key_by_api_key_or_ip,
    password_reset_rate_limit,
    rate_limit,
    redirect_on_refused,
    upload_rate_limit,
    user_rate_limit,
)

POLICY = RateLimitPolicy(window_ms=1000, max_requests=2, message="Slow down")
API_KEY = "test-api-key-123"
USER_KEY = f"user:{hash_identifier(API_KEY)}"

PRESETS = {
    "auth": (auth_rate_limit, AUTH_POLICY, "auth:ip:testclient"),
    "api": (api_rate_limit, API_POLICY, "api:ip:testclient"),
    "general": (general_rate_limit, GENERAL_POLICY, "ip:testclient"),
    "admin": (admin_ip_rate_limit, GENERAL_POLICY, "admin:ip:testclient"),
    "password_reset": (password_reset_rate_limit, PASSWORD_RESET_POLICY, "password_reset:ip:testclient"),
    "email": (email_rate_limit, EMAIL_POLICY, "email:ip:testclient"),
    "upload": (upload_rate_limit, UPLOAD_POLICY, "upload:ip:testclient"),
    "create_account": (create_account_rate_limit, CREATE_ACCOUNT_POLICY, "create_account:ip:testclient"),
}


@pytest.fixture
def calls() -> list[str]:
    return []


@pytest.fixture
def guarded_app(limiter, calls: list[str]) -> FastAPI:
    app = FastAPI()
    app.state.rate_limiter = limiter
    setup_exception_handlers(app)

    @app.get("/guarded", dependencies=[Depends(rate_limit(POLICY))])
    def guarded() -> dict:
        calls.append("guarded")
        return {"ok": True}

    @app.get("/scoped", dependencies=[Depends(rate_limit(POLICY, scope="login"))])
    def scoped() -> dict:
        calls.append("scoped")
        return {"ok": True}

    @app.get("/by-key", dependencies=[Depends(rate_limit(POLICY, key_func=key_by_api_key_or_ip))])
    def by_key() -> dict:
        return {"ok": True}

    @app.get("/login", dependencies=[Depends(auth_rate_limit)])
    def login() -> dict:
        return {"ok": True}

    @app.get(
        "/me",
        dependencies=[Depends(verify_api_key), Depends(user_rate_limit(max_requests=1, window_ms=1000))],
    )
    def me() -> dict:
        return {"ok": True}

    @app.post("/account/email", dependencies=[Depends(verify_api_key), Depends(email_rate_limit)])
    def send_account_email() -> dict:
        return {"sent": True}

    @app.get("/shared", dependencies=[Depends(custom_rate_limit("global:export", max_requests=1))])
    def shared() -> dict:
        return {"ok": True}

    @app.get("/busy", dependencies=[Depends(rate_limit(POLICY, status_code=503))])
    def busy() -> dict:
        return {"ok": True}

    @app.post(
        "/login-form",
        dependencies=[Depends(rate_limit(POLICY, scope="form", on_refused=redirect_on_refused("/login")))],
    )
    def login_form() -> dict:
        calls.append("login-form")
        return {"ok": True}

    def preset() -> dict:
        return {"ok": True}

    for name, (dependency, _policy, _key) in PRESETS.items():
        app.add_api_route(
            f"/presets/{name}",
            preset,
            methods=["POST"],
            dependencies=[Depends(dependency)],
        )

    return app


@pytest.fixture
def client(guarded_app: FastAPI) -> TestClient:
    return TestClient(guarded_app)


def test_allowed_requests_expose_quota_headers(client: TestClient, clock) -> None:
    resp = client.get("/guarded")

    assert resp.status_code == 200
    assert resp.headers["X-RateLimit-Limit"] == "2"
    assert resp.headers["X-RateLimit-Remaining"] == "1"
    assert resp.headers["X-RateLimit-Reset"] == str(math.ceil((clock.now + 1000) / 1000))


def test_refused_request_returns_429_and_skips_handler(client: TestClient, calls: list[str]) -> None:
    client.get("/guarded")
    client.get("/guarded")

    resp = client.get("/guarded")

    assert resp.status_code == 429
    assert resp.headers["Retry-After"] == "1"
    assert resp.headers["X-RateLimit-Remaining"] == "0"
    body = resp.json()
    assert body["error"]["code"] == "rate_limit_exceeded"
    assert body["error"]["message"] == "Slow down"
    assert body["error"]["details"]["retry_after"] == 1
    assert calls == ["guarded", "guarded"]


def test_quota_recovers_after_window(client: TestClient, clock) -> None:
    client.get("/guarded")
    client.get("/guarded")
    assert client.get("/guarded").status_code == 429

    clock.advance(1001)

    assert client.get("/guarded").status_code == 200


def test_scopes_keep_independent_quotas(client: TestClient, limiter) -> None:
    client.get("/guarded")
    client.get("/guarded")
    assert client.get("/guarded").status_code == 429

    assert client.get("/scoped").status_code == 200
    assert "login:ip:testclient" in limiter
    assert "ip:testclient" in limiter


def test_proxy_header_ignored_unless_trusted(client: TestClient, limiter, monkeypatch) -> None:
    client.get("/guarded", headers={"CF-Connecting-IP": "203.0.113.7"})
    assert "ip:testclient" in limiter

    monkeypatch.setattr(settings.app, "rate_limit_trust_proxy_header", True)
    client.get("/guarded", headers={"CF-Connecting-IP": "203.0.113.7"})
    assert "ip:203.0.113.7" in limiter


def test_api_key_is_fingerprinted_in_store_key(client: TestClient, limiter) -> None:
    client.get("/by-key", headers={"X-API-Key": "super-secret"})

    assert f"api_key:{hash_identifier('super-secret')}" in limiter
    assert "api_key:super-secret" not in limiter


def test_preset_policy_applies(client: TestClient) -> None:
    statuses = [client.get("/login").status_code for _ in range(AUTH_POLICY.max_requests + 1)]

    assert statuses == [200] * AUTH_POLICY.max_requests + [429]
    assert client.get("/login").json()["error"]["message"] == AUTH_POLICY.message


def test_user_rate_limit_keys_on_authenticated_user(client: TestClient, limiter) -> None:
    assert client.get("/me", headers={"X-API-Key": API_KEY}).status_code == 200
    assert client.get("/me", headers={"X-API-Key": API_KEY}).status_code == 429

    assert USER_KEY in limiter
    assert limiter.size() == 1


def test_user_rate_limit_does_not_count_anonymous_requests(client: TestClient, limiter, monkeypatch) -> None:
    assert client.get("/me").status_code == 403
    assert client.get("/me", headers={"X-User-ID": "42"}).status_code == 403
    assert limiter.size() == 0

    monkeypatch.setattr(settings.app, "api_key_required", False)
    for _ in range(3):
        assert client.get("/me", headers={"X-User-ID": "42"}).status_code == 200
    assert limiter.size() == 0


def test_user_id_header_cannot_rotate_past_email_quota(client: TestClient, limiter) -> None:
    statuses = [
        client.post("/presets/email", headers={"X-User-ID": f"user-{i}"}).status_code
        for i in range(30)
    ]

    assert statuses == [200] * EMAIL_POLICY.max_requests + [429] * (30 - EMAIL_POLICY.max_requests)
    assert limiter.size() == 1
    assert "email:ip:testclient" in limiter


def test_email_rate_limit_keys_authenticated_user(client: TestClient, limiter) -> None:
    resp = client.post("/account/email", headers={"X-API-Key": API_KEY, "X-User-ID": "spoofed"})

    assert resp.status_code == 200
    assert f"email:{USER_KEY}" in limiter
    assert "email:user:spoofed" not in limiter


@pytest.mark.parametrize("name", list(PRESETS))
def test_preset_creates_scoped_key(client: TestClient, limiter, name: str) -> None:
    _dependency, policy, expected_key = PRESETS[name]

    resp = client.post(f"/presets/{name}")

    assert resp.status_code == 200
    assert resp.headers["X-RateLimit-Limit"] == str(policy.max_requests)
    assert resp.headers["X-RateLimit-Remaining"] == str(policy.max_requests - 1)
    assert limiter.size() == 1
    assert limiter.get_status(expected_key).total_count == 1


@pytest.mark.parametrize("name", list(PRESETS))
def test_preset_refuses_after_quota(client: TestClient, limiter, name: str) -> None:
    _dependency, policy, expected_key = PRESETS[name]
    for _ in range(policy.max_requests):
        assert limiter.check(expected_key, policy).allowed

    resp = client.post(f"/presets/{name}")

    assert resp.status_code == 429
    assert resp.json()["error"]["message"] == policy.message
    assert int(resp.headers["Retry-After"]) == math.ceil(policy.window_ms / 1000)


def test_refusal_status_code_is_configurable(client: TestClient) -> None:
    client.get("/busy")
    client.get("/busy")

    resp = client.get("/busy")

    assert resp.status_code == 503
    assert resp.headers["Retry-After"] == "1"
    assert resp.json()["error"]["code"] == "rate_limit_exceeded"


def test_on_refused_builds_custom_response(guarded_app: FastAPI, calls: list[str]) -> None:
    client = TestClient(guarded_app, follow_redirects=False)
    client.post("/login-form")
    client.post("/login-form")

    resp = client.post("/login-form")

    assert resp.status_code == 303
    assert resp.headers["Location"] == "/login?error=rate_limited"
    assert resp.headers["Retry-After"] == "1"
    assert resp.headers["X-RateLimit-Remaining"] == "0"
    assert calls == ["login-form", "login-form"]


@pytest.mark.parametrize("status_code", [200, 302, 600])
def test_refusal_status_code_must_be_an_error(status_code: int) -> None:
    with pytest.raises(ValueError):
        rate_limit(POLICY, status_code=status_code)


def test_custom_rate_limit_shares_one_key(client: TestClient, limiter) -> None:
    assert client.get("/shared").status_code == 200
    assert client.get("/shared", headers={"X-User-ID": "other"}).status_code == 429
    assert limiter.size() == 1


def test_disabled_rate_limit_admits_everything(client: TestClient, limiter, monkeypatch) -> None:
    monkeypatch.setattr(settings.app, "rate_limit_enabled", False)

    statuses = [client.get("/guarded").status_code for _ in range(5)]

    assert statuses == [200] * 5
    assert limiter.size() == 0


def test_headers_can_be_disabled(client: TestClient, monkeypatch) -> None:
    monkeypatch.setattr(settings.app, "rate_limit_include_headers", False)

    assert "X-RateLimit-Remaining" not in client.get("/guarded").headers
    client.get("/guarded")
    refused = client.get("/guarded")

    assert refused.status_code == 429
    assert refused.headers["Retry-After"] == "1"
    assert "X-RateLimit-Limit" not in refused.headers


def test_missing_engine_returns_503(guarded_app: FastAPI) -> None:
    guarded_app.state.rate_limiter = None
    client = TestClient(guarded_app)

    resp = client.get("/guarded")

    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "rate_limiter_unavailable"


def test_presets_are_stricter_for_sensitive_flows() -> None:
    assert PASSWORD_RESET_POLICY.max_requests < AUTH_POLICY.max_requests
    assert CREATE_ACCOUNT_POLICY.window_ms == 60 * 60 * 1000
