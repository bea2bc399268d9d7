"""
Tests for the authentication and identity provider routes
"""

import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.core.exceptions import IdentityProviderError, ValidationError
from app.main import create_app
from app.services.freshness import decode_freshness_token
from app.services.identity import IdentityProviderClient
from app.utils.clock import to_epoch_ms

from conftest import auth_headers, fresh_ts

PASSWORD = "correct-horse-1"

async def _signup(client, clock, email="ann@example.com", password=PASSWORD, username="ann"):
    return await client.post(
        "/api/auth/signup",
        json={"email": email, "password": password, "username": username},
        headers={"ts": fresh_ts(clock), "user-agent": "pytest", "x-platform": "web"}
    )

async def _login(client, clock, email="ann@example.com", password=PASSWORD):
    return await client.post(
        "/api/auth/login",
        json={"email": email, "password": password},
        headers={"ts": fresh_ts(clock)}
    )

def _headers(clock, body):
    return auth_headers(clock, body["authToken"], body["sessionToken"], user_id=body["user"]["id"])

async def test_signup_issues_credentials(client, clock):
    response = await _signup(client, clock, email="Ann@Example.com ")

    assert response.status_code == 201
    body = response.json()
    assert body["user"]["email"] == "ann@example.com"
    assert body["user"]["username"].startswith("ann")
    assert len(body["user"]["username"]) == len("ann") + 6
    assert body["user"]["public_connected"] is True
    assert len(body["sessionToken"]) == 64
    assert body["sessionId"]

    me = await client.get("/api/auth/me", headers=_headers(clock, body))
    assert me.status_code == 200
    assert me.json()["user"]["id"] == body["user"]["id"]
    assert me.json()["method"] == "password"

async def test_signup_rejects_duplicate_email(client, clock):
    assert (await _signup(client, clock)).status_code == 201

    response = await _signup(client, clock, email="ANN@example.com")

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "CONFLICT"

@pytest.mark.parametrize("email,password,username", [
    ("ann@example.com", "short1", "ann"),
    ("ann@example.com", "lettersonly", "ann"),
    ("not-an-email", PASSWORD, "ann"),
    ("ann@example.com", PASSWORD, "  "),
])
async def test_signup_validation(client, clock, email, password, username):
    response = await _signup(client, clock, email=email, password=password, username=username)

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"

async def test_login_replaces_previous_login(client, clock):
    first = (await _signup(client, clock)).json()

    response = await _login(client, clock)
    assert response.status_code == 200
    second = response.json()
    assert second["user"]["id"] == first["user"]["id"]

    stale = await client.get("/api/auth/me", headers=_headers(clock, first))
    assert stale.status_code == 401
    assert stale.json()["error"]["code"] == "NOT_LOGGED_IN"

    logins = await client.get("/api/auth/logins", headers=_headers(clock, second))
    assert logins.status_code == 200
    entries = logins.json()
    assert [entry["session_id"] for entry in entries] == [second["sessionId"], first["sessionId"]]
    assert [entry["is_logged_in"] for entry in entries] == [True, False]
    assert [entry["current"] for entry in entries] == [True, False]
    assert entries[1]["device_info"] == {"user_agent": "pytest", "platform": "web"}

async def test_wrong_password_is_generic(client, clock):
    await _signup(client, clock)

    wrong_password = await _login(client, clock, password="wrong-password-1")
    unknown_email = await _login(client, clock, email="bob@example.com")

    for response in (wrong_password, unknown_email):
        assert response.status_code == 401
        assert response.json()["error"] == {
            "code": "INVALID_CREDENTIALS",
            "message": "Invalid email or password.",
            "details": {},
        }

async def test_repeated_failures_lock_the_account(client, clock):
    await _signup(client, clock)

    for _ in range(5):
        assert (await _login(client, clock, password="wrong-password-1")).status_code == 401

    locked = await _login(client, clock)
    assert locked.status_code == 403
    assert locked.json()["error"]["code"] == "ACCOUNT_LOCKED"
    assert locked.json()["error"]["details"] == {"minutes_remaining": 30}

    clock.advance(minutes=31)
    assert (await _login(client, clock)).status_code == 200

async def test_successful_login_clears_failures(client, clock):
    await _signup(client, clock)
    for _ in range(4):
        await _login(client, clock, password="wrong-password-1")

    assert (await _login(client, clock)).status_code == 200

    for _ in range(4):
        assert (await _login(client, clock, password="wrong-password-1")).status_code == 401
    assert (await _login(client, clock)).status_code == 200

async def test_logout_ends_the_login(client, clock):
    body = (await _signup(client, clock)).json()

    response = await client.post("/api/auth/logout", headers=_headers(clock, body))
    assert response.status_code == 200
    assert response.json() == {"message": "Logged out successfully.", "revoked": 1}

    replay = await client.post("/api/auth/logout", headers=_headers(clock, body))
    assert replay.status_code == 401
    assert replay.json()["error"]["code"] == "NOT_LOGGED_IN"

async def test_validate_reports_credential_state(client, clock):
    body = (await _signup(client, clock)).json()

    valid = await client.get("/api/auth/validate", headers=_headers(clock, body))
    assert valid.json() == {"valid": True, "userId": body["user"]["id"]}

    headers = _headers(clock, body)
    headers["X-Session-Token"] = "0" * 64
    invalid = await client.get("/api/auth/validate", headers=headers)
    assert invalid.status_code == 200
    assert invalid.json() == {"valid": False, "userId": None}

async def test_ts_route_issues_fresh_token(client, clock):
    response = await client.get("/api/auth/ts")

    assert response.status_code == 200
    body = response.json()
    assert body["generatedAt"] == to_epoch_ms(clock())
    assert decode_freshness_token(body["ts"]) == body["generatedAt"]

async def test_health_check(client):
    response = await client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["database"]["status"] == "connected"
    assert isinstance(body["database"]["latency"], float)

GOOGLE_PROFILE = {
    "id": "g-123",
    "email": "Ann@Example.com",
    "name": "Ann Example",
    "picture": "https://example.com/ann.png",
}

def google_transport(profile=GOOGLE_PROFILE, token_status=200):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "oauth2.googleapis.com":
            if token_status != 200:
                return httpx.Response(token_status, json={"error": "invalid_grant"})
            return httpx.Response(200, json={"access_token": "provider-access-token"})
        if request.url.host == "www.googleapis.com":
            assert request.headers["authorization"] == "Bearer provider-access-token"
            return httpx.Response(200, json=profile)
        return httpx.Response(404)
    return httpx.MockTransport(handler)

@pytest.fixture
def oauth_settings(settings):
    return settings.model_copy(update={
        "google_client_id": "google-client",
        "google_client_secret": "google-secret",
        "frontend_url": "https://app.example.com",
        "oauth_redirect_base": "https://api.example.com",
    })

@pytest_asyncio.fixture
async def oauth_client(oauth_settings, session_factory, clock):
    app = create_app(
        settings=oauth_settings,
        session_factory=session_factory,
        clock=clock,
        identity_transport=google_transport()
    )
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    await app.state.background_tasks.drain()

async def _start(client):
    response = await client.get("/auth/google")
    assert response.status_code == 302
    location = urlparse(response.headers["location"])
    return location, {key: values[0] for key, values in parse_qs(location.query).items()}

def _callback_params(response):
    assert response.status_code == 302
    location = urlparse(response.headers["location"])
    return location, {key: values[0] for key, values in parse_qs(location.query).items()}

async def test_oauth_start_redirects_to_provider(oauth_client):
    location, params = await _start(oauth_client)

    assert location.netloc == "accounts.google.com"
    assert params["client_id"] == "google-client"
    assert params["redirect_uri"] == "https://api.example.com/auth/google/callback"
    assert params["response_type"] == "code"
    assert params["state"]

async def test_oauth_callback_signs_the_user_in(oauth_client, clock):
    _, params = await _start(oauth_client)

    response = await oauth_client.get("/auth/google/callback", params={"code": "abc", "state": params["state"]})

    location, result = _callback_params(response)
    assert f"{location.scheme}://{location.netloc}{location.path}" == "https://app.example.com/auth/google/callback"
    user = json.loads(result["user"])
    assert user["email"] == "ann@example.com"
    assert user["google_connected"] is True
    assert user["username"].startswith("user")

    me = await oauth_client.get(
        "/api/auth/me",
        headers=auth_headers(clock, result["authToken"], result["sessionToken"], user_id=result["userId"])
    )
    assert me.status_code == 200
    assert me.json()["method"] == "google"

async def test_oauth_login_links_existing_password_account(oauth_client, clock):
    signed_up = (await _signup(oauth_client, clock)).json()
    _, params = await _start(oauth_client)

    response = await oauth_client.get("/auth/google/callback", params={"code": "abc", "state": params["state"]})

    _, result = _callback_params(response)
    assert result["userId"] == signed_up["user"]["id"]
    stale = await oauth_client.get("/api/auth/me", headers=_headers(clock, signed_up))
    assert stale.json()["error"]["code"] == "NOT_LOGGED_IN"

@pytest.mark.parametrize("state", ["", "not-a-jwt"])
async def test_oauth_callback_rejects_bad_state(oauth_client, state):
    response = await oauth_client.get("/auth/google/callback", params={"code": "abc", "state": state})

    _, result = _callback_params(response)
    assert result == {"error": "auth_failed"}

async def test_oauth_callback_rejects_expired_state(oauth_client, clock):
    _, params = await _start(oauth_client)
    clock.advance(minutes=11)

    response = await oauth_client.get("/auth/google/callback", params={"code": "abc", "state": params["state"]})

    _, result = _callback_params(response)
    assert result == {"error": "auth_failed"}

async def test_oauth_callback_without_code(oauth_client):
    response = await oauth_client.get("/auth/google/callback", params={"error": "access_denied"})

    _, result = _callback_params(response)
    assert result == {"error": "auth_failed"}

async def test_oauth_provider_rejection(oauth_settings, session_factory, clock):
    app = create_app(
        settings=oauth_settings,
        session_factory=session_factory,
        clock=clock,
        identity_transport=google_transport(token_status=400)
    )
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        _, params = await _start(client)
        response = await client.get("/auth/google/callback", params={"code": "abc", "state": params["state"]})

    _, result = _callback_params(response)
    assert result == {"error": "auth_failed"}

async def test_oauth_state_is_bound_to_provider(oauth_settings, clock):
    identity = IdentityProviderClient(oauth_settings, clock)
    state = identity.sign_state("github")

    identity.verify_state(state, "github")
    with pytest.raises(ValidationError) as exc_info:
        identity.verify_state(state, "google")
    assert exc_info.value.error_code == "INVALID_OAUTH_STATE"

async def test_oauth_provider_must_be_configured(client):
    response = await client.get("/auth/google")

    assert response.status_code == 502
    assert response.json()["error"]["code"] == "IDENTITY_PROVIDER_ERROR"

def test_unsupported_provider(settings, clock):
    identity = IdentityProviderClient(settings, clock)
    with pytest.raises(ValidationError) as exc_info:
        identity.authorization_url("twitter")
    assert exc_info.value.error_code == "UNSUPPORTED_PROVIDER"

    with pytest.raises(IdentityProviderError):
        identity.authorization_url("github")
