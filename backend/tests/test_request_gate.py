"""
Tests for the request gate middleware
"""

from datetime import timedelta

import pytest
import pytest_asyncio
from fastapi import Request
from httpx import ASGITransport, AsyncClient

from app.core.exceptions import LOGIN_REQUIRED_MESSAGE
from app.db.models.types import LoginMethod
from app.main import create_app
from app.middleware.request_gate import path_matches

from conftest import auth_headers, fresh_ts

async def echo(request: Request):
    auth = request.state.auth
    if auth is None:
        return {"userId": None}
    return {"userId": auth.user_id, "sessionId": auth.session_id, "method": auth.method}

@pytest_asyncio.fixture
async def gate_client(test_app):
    test_app.add_api_route("/api/echo", echo, methods=["GET"])
    async with AsyncClient(transport=ASGITransport(app=test_app), base_url="http://test") as client:
        yield client

async def _login(db_session, login_registry, session_registry, user_id="u1", ttl=timedelta(hours=24)):
    grant = await login_registry.record_login(db_session, user_id, LoginMethod.PASSWORD, {}, "1.2.3.4", ttl)
    session_token = await session_registry.record_session(db_session, grant.session_id, "UA", "en")
    return grant, session_token

def _assert_denied(response, reason, status_code=401):
    assert response.status_code == status_code
    error = response.json()["error"]
    assert error["code"] == reason
    if status_code == 401:
        assert error["message"] == LOGIN_REQUIRED_MESSAGE

async def test_login_then_protected_request(gate_client, db_session, login_registry, session_registry, clock):
    grant, session_token = await _login(db_session, login_registry, session_registry)

    response = await gate_client.get(
        "/api/echo", headers=auth_headers(clock, grant.auth_token, session_token, user_id="u1")
    )

    assert response.status_code == 200
    assert response.json() == {"userId": "u1", "sessionId": grant.session_id, "method": "password"}

async def test_user_id_header_is_optional(gate_client, db_session, login_registry, session_registry, clock):
    grant, session_token = await _login(db_session, login_registry, session_registry)

    response = await gate_client.get("/api/echo", headers=auth_headers(clock, grant.auth_token, session_token))

    assert response.status_code == 200
    assert response.json()["userId"] == "u1"

async def test_ts_query_parameter_is_accepted(gate_client, db_session, login_registry, session_registry, clock):
    grant, session_token = await _login(db_session, login_registry, session_registry)
    headers = auth_headers(clock, grant.auth_token, session_token)
    ts = headers.pop("ts")

    response = await gate_client.get("/api/echo", headers=headers, params={"ts": ts})

    assert response.status_code == 200

async def test_missing_ts_is_rejected(gate_client):
    response = await gate_client.get("/api/echo")
    _assert_denied(response, "MALFORMED_CREDENTIAL", 400)

async def test_garbage_ts_is_rejected(gate_client):
    response = await gate_client.get("/api/echo", headers={"ts": "%%%"})
    _assert_denied(response, "MALFORMED_CREDENTIAL", 400)

async def test_stale_ts_is_rejected(gate_client, db_session, login_registry, session_registry, clock):
    grant, session_token = await _login(db_session, login_registry, session_registry)
    headers = auth_headers(clock, grant.auth_token, session_token)
    clock.advance(seconds=21)

    response = await gate_client.get("/api/echo", headers=headers)

    _assert_denied(response, "TS_EXPIRED")

async def test_ts_is_checked_on_public_routes(gate_client):
    response = await gate_client.post("/api/auth/login", json={"email": "a@b.co", "password": "x"})
    _assert_denied(response, "MALFORMED_CREDENTIAL", 400)

@pytest.mark.parametrize("drop", ["Authorization", "X-Session-Token"])
async def test_missing_credentials(gate_client, db_session, login_registry, session_registry, clock, drop):
    grant, session_token = await _login(db_session, login_registry, session_registry)
    headers = auth_headers(clock, grant.auth_token, session_token)
    del headers[drop]

    response = await gate_client.get("/api/echo", headers=headers)

    _assert_denied(response, "MISSING_CREDENTIALS")

async def test_non_bearer_authorization_is_missing(gate_client, db_session, login_registry, session_registry, clock):
    grant, session_token = await _login(db_session, login_registry, session_registry)
    headers = auth_headers(clock, grant.auth_token, session_token)
    headers["Authorization"] = f"Basic {grant.auth_token}"

    response = await gate_client.get("/api/echo", headers=headers)

    _assert_denied(response, "MISSING_CREDENTIALS")

async def test_malformed_token(gate_client, clock):
    response = await gate_client.get("/api/echo", headers=auth_headers(clock, "short", "s" * 64))
    _assert_denied(response, "INVALID_TOKEN")

async def test_user_id_mismatch(gate_client, db_session, login_registry, session_registry, clock):
    grant, session_token = await _login(db_session, login_registry, session_registry)

    response = await gate_client.get(
        "/api/echo", headers=auth_headers(clock, grant.auth_token, session_token, user_id="u2")
    )

    _assert_denied(response, "USER_MISMATCH")

async def test_token_minted_but_never_recorded(gate_client, codec, clock):
    response = await gate_client.get("/api/echo", headers=auth_headers(clock, codec.mint("u1"), "s" * 64))
    _assert_denied(response, "NOT_LOGGED_IN")

async def test_expired_login_is_denied(gate_client, db_session, login_registry, session_registry, clock):
    grant, session_token = await _login(db_session, login_registry, session_registry)
    clock.advance(hours=24)

    response = await gate_client.get("/api/echo", headers=auth_headers(clock, grant.auth_token, session_token))

    _assert_denied(response, "LOGIN_EXPIRED")

async def test_logout_then_replay_is_denied(gate_client, db_session, login_registry, session_registry, clock):
    grant, session_token = await _login(db_session, login_registry, session_registry)
    headers = auth_headers(clock, grant.auth_token, session_token, user_id="u1")
    assert (await gate_client.get("/api/echo", headers=headers)).status_code == 200

    await login_registry.revoke_all(db_session, "u1")

    response = await gate_client.get("/api/echo", headers=auth_headers(clock, grant.auth_token, session_token))
    _assert_denied(response, "NOT_LOGGED_IN")

async def test_new_login_invalidates_previous_one(gate_client, db_session, login_registry, session_registry, clock):
    first, first_session = await _login(db_session, login_registry, session_registry)
    second, second_session = await _login(db_session, login_registry, session_registry)

    denied = await gate_client.get("/api/echo", headers=auth_headers(clock, first.auth_token, first_session))
    allowed = await gate_client.get("/api/echo", headers=auth_headers(clock, second.auth_token, second_session))

    _assert_denied(denied, "NOT_LOGGED_IN")
    assert allowed.status_code == 200
    assert allowed.json()["sessionId"] == second.session_id

async def test_session_token_must_belong_to_the_login(gate_client, db_session, login_registry, session_registry, clock):
    mine, _ = await _login(db_session, login_registry, session_registry, user_id="u1")
    _, theirs = await _login(db_session, login_registry, session_registry, user_id="u2")

    response = await gate_client.get("/api/echo", headers=auth_headers(clock, mine.auth_token, theirs))

    _assert_denied(response, "INVALID_SESSION")

async def test_public_path_needs_no_credentials(gate_client, clock):
    response = await gate_client.get("/api/auth/validate", headers={"ts": fresh_ts(clock)})

    assert response.status_code == 200
    assert response.json() == {"valid": False, "userId": None}

async def test_freshness_exempt_paths(gate_client):
    assert (await gate_client.get("/health")).status_code == 200
    assert (await gate_client.get("/api/auth/ts")).status_code == 200

async def test_public_marker_skips_credentials(gate_client, clock):
    response = await gate_client.get("/api/echo", headers={"ts": fresh_ts(clock), "authentication": "public"})

    assert response.status_code == 200
    assert response.json() == {"userId": None}

async def test_public_marker_does_not_satisfy_protected_routes(gate_client, clock):
    response = await gate_client.get("/api/auth/logins", headers={"ts": fresh_ts(clock), "authentication": "public"})
    _assert_denied(response, "MISSING_CREDENTIALS")

async def test_public_marker_can_be_disabled(settings, session_factory, clock):
    app = create_app(
        settings=settings.model_copy(update={"allow_public_marker": False}),
        session_factory=session_factory,
        clock=clock
    )
    app.add_api_route("/api/echo", echo, methods=["GET"])
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/api/echo", headers={"ts": fresh_ts(clock), "authentication": "public"})

    _assert_denied(response, "MISSING_CREDENTIALS")

async def test_throttle_applies_to_every_route(gate_client, clock):
    for _ in range(50):
        assert (await gate_client.get("/health")).status_code == 200

    blocked = await gate_client.get("/health")
    assert blocked.status_code == 429
    assert blocked.headers["retry-after"] == "300"
    assert blocked.json()["error"]["code"] == "RATE_LIMITED"
    assert blocked.json()["error"]["details"] == {"retry_after": 300}

    clock.advance(seconds=301)
    assert (await gate_client.get("/health")).status_code == 200

async def test_throttle_runs_before_authentication(gate_client):
    for _ in range(50):
        await gate_client.get("/api/echo")

    response = await gate_client.get("/api/echo")
    assert response.status_code == 429

async def test_missing_secret_is_a_configuration_error(settings, session_factory, codec, clock):
    app = create_app(
        settings=settings.model_copy(update={"user_token_secret": ""}),
        session_factory=session_factory,
        clock=clock
    )
    app.add_api_route("/api/echo", echo, methods=["GET"])
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/api/echo", headers=auth_headers(clock, codec.mint("u1"), "s" * 64))

    assert response.status_code == 500
    assert response.json()["error"]["code"] == "CONFIGURATION_ERROR"

async def test_response_transform_rewrites_json(settings, session_factory, clock):
    async def image(request: Request):
        return {"image_url": "https://storage.example.com/a.png", "name": "a"}

    app = create_app(
        settings=settings.model_copy(update={
            "storage_public_url": "https://storage.example.com",
            "image_proxy_url": "https://api.example.com/proxy-image",
        }),
        session_factory=session_factory,
        clock=clock
    )
    app.add_api_route("/api/public/image", image, methods=["GET"])
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/api/public/image", headers={"ts": fresh_ts(clock)})

    assert response.status_code == 200
    assert response.json() == {"image_url": "https://api.example.com/proxy-image/a.png", "name": "a"}
    assert int(response.headers["content-length"]) == len(response.content)

async def test_forwarded_for_is_ignored_unless_trusted(settings, session_factory, clock):
    app = create_app(settings=settings, session_factory=session_factory, clock=clock)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        for i in range(50):
            await client.get("/health", headers={"x-forwarded-for": f"10.0.0.{i}"})
        response = await client.get("/health", headers={"x-forwarded-for": "10.0.1.1"})
    assert response.status_code == 429

    trusting = create_app(
        settings=settings.model_copy(update={"trust_forwarded_for": True}),
        session_factory=session_factory,
        clock=clock
    )
    async with AsyncClient(transport=ASGITransport(app=trusting), base_url="http://test") as client:
        for i in range(50):
            await client.get("/health", headers={"x-forwarded-for": f"10.0.0.{i}"})
        response = await client.get("/health", headers={"x-forwarded-for": "10.0.1.1"})
    assert response.status_code == 200

def test_path_matches():
    prefixes = ["/api/public", "/health/"]
    assert path_matches("/api/public", prefixes)
    assert path_matches("/api/public/wallpapers", prefixes)
    assert path_matches("/health", prefixes)
    assert not path_matches("/api/publicity", prefixes)
    assert not path_matches("/api/user", prefixes)

