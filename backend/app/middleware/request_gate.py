"""
Request gate: throttling, freshness and credential checks for every request

Order of checks:

1. per-IP throttle (every route, public ones included)
2. freshness token from the ``ts`` header or query parameter
3. public path or ``authentication: public`` marker skips the rest
4. bearer auth token and X-Session-Token must both be present
5. user id is extracted from the auth token and compared with x-user-id
6. the token must be the user's active, unexpired login and the session
   token must match that login's session

A request that passes is tagged with an AuthContext on request.state.auth.
"""

import json
from dataclasses import dataclass
from typing import Iterable, Optional

from fastapi import Request, Response
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.datastructures import MutableHeaders
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.config import Settings
from app.core.error_handlers import app_exception_handler, sqlalchemy_exception_handler
from app.core.exceptions import AuthenticationError, BaseAppException, DatabaseError, RateLimitedError
from app.services.auth import client_ip
from app.services.freshness import check_freshness
from app.services.login_registry import LoginRegistry
from app.services.rate_limiter import RateLimiter
from app.services.response_transform import ResponseTransform
from app.services.session_registry import SessionRegistry
from app.services.token_codec import InvalidTokenError, TokenCodec
from app.utils.clock import Clock, to_epoch_ms, utcnow
from app.utils.logging import get_logger

logger = get_logger(__name__)

# Security scheme for bearer auth tokens
security = HTTPBearer(auto_error=False)

SESSION_TOKEN_HEADER = "x-session-token"
USER_ID_HEADER = "x-user-id"
PUBLIC_MARKER_HEADER = "authentication"

@dataclass(frozen=True)
class AuthContext:
    """Identity attached to an authenticated request"""
    user_id: str
    session_id: str
    method: str

def path_matches(path: str, prefixes: Iterable[str]) -> bool:
    """True when path equals a prefix or lies below it"""
    for prefix in prefixes:
        prefix = prefix.rstrip("/") or "/"
        if path == prefix or path.startswith(prefix + "/"):
            return True
    return False

class RequestAuthenticator:
    """Credential steps of the gate, usable on their own by the validate route"""

    def __init__(
        self,
        codec: TokenCodec,
        login_registry: LoginRegistry,
        session_registry: SessionRegistry,
        clock: Clock = utcnow
    ):
        self.codec = codec
        self.login_registry = login_registry
        self.session_registry = session_registry
        self.clock = clock

    def _deny(self, request: Request, reason: str, user_id: Optional[str] = None) -> AuthenticationError:
        logger.warning(
            f"Denied {request.method} {request.url.path}: {reason}",
            extra={"reason": reason, "path": request.url.path, "user_id": user_id}
        )
        return AuthenticationError(error_code=reason)

    async def authenticate(self, request: Request, db: AsyncSession) -> AuthContext:
        """
        Validate the credentials carried by request

        Raises:
            AuthenticationError: With the denial reason as error code
            ConfigurationError: If no token secret is configured
        """
        # Both credentials are required together
        credentials: Optional[HTTPAuthorizationCredentials] = await security(request)
        auth_token = credentials.credentials.strip() if credentials else ""
        session_token = request.headers.get(SESSION_TOKEN_HEADER, "").strip()
        if not auth_token or not session_token:
            raise self._deny(request, "MISSING_CREDENTIALS")

        try:
            user_id = self.codec.extract_user_id(auth_token)
        except InvalidTokenError:
            raise self._deny(request, "INVALID_TOKEN")

        # x-user-id is optional but must agree with the token
        claimed_user_id = request.headers.get(USER_ID_HEADER)
        if claimed_user_id and claimed_user_id != user_id:
            raise self._deny(request, "USER_MISMATCH", user_id)

        # A newer login deactivates this token
        login = await self.login_registry.lookup_active(db, user_id, auth_token)
        if login is None:
            raise self._deny(request, "NOT_LOGGED_IN", user_id)
        if login.is_expired(self.clock()):
            raise self._deny(request, "LOGIN_EXPIRED", user_id)

        session = await self.session_registry.lookup(db, login.session_id, session_token)
        if session is None:
            raise self._deny(request, "INVALID_SESSION", user_id)

        method = login.method.value if hasattr(login.method, "value") else str(login.method)
        return AuthContext(user_id=user_id, session_id=login.session_id, method=method)

class RequestGate(BaseHTTPMiddleware):
    """Allow/deny decision for every request before it reaches a route"""

    def __init__(
        self,
        app,
        settings: Settings,
        authenticator: RequestAuthenticator,
        rate_limiter: RateLimiter,
        clock: Clock = utcnow,
        response_transform: Optional[ResponseTransform] = None
    ):
        super().__init__(app)
        self.settings = settings
        self.authenticator = authenticator
        self.rate_limiter = rate_limiter
        self.clock = clock
        self.response_transform = response_transform
        self.max_age_ms = int(settings.freshness_max_age_seconds * 1000)
        logger.info("Request gate initialized")

    def is_public(self, request: Request) -> bool:
        if path_matches(request.url.path, self.settings.public_paths):
            return True
        marker = request.headers.get(PUBLIC_MARKER_HEADER, "")
        return self.settings.allow_public_marker and marker.lower() == "public"

    async def dispatch(self, request: Request, call_next) -> Response:
        """Process each request through the gate"""
        try:
            await self._admit(request)
        except BaseAppException as e:
            return await app_exception_handler(request, e)
        except SQLAlchemyError as e:
            return await sqlalchemy_exception_handler(request, e)

        response = await call_next(request)
        if self.response_transform is not None:
            response = await self._transform(response)
        return response

    async def _admit(self, request: Request) -> None:
        path = request.url.path
        request.state.auth = None

        # Throttle first so rejected requests still count
        ip = client_ip(request, self.settings.trust_forwarded_for)
        decision = await self.rate_limiter.hit(ip, path)
        if not decision.allowed:
            raise RateLimitedError(decision.retry_after_seconds)

        # Always allow OPTIONS requests for CORS
        if request.method == "OPTIONS":
            return

        # Header wins over the query parameter
        if not path_matches(path, self.settings.freshness_exempt_paths):
            ts_token = request.headers.get("ts") or request.query_params.get("ts")
            check_freshness(ts_token, to_epoch_ms(self.clock()), self.max_age_ms)

        if self.is_public(request):
            return

        # Credential checks get a short-lived session of their own
        db_pool = getattr(request.app.state, "db_pool", None)
        if db_pool is None:
            raise DatabaseError("Database pool not initialized")
        async with db_pool() as db:
            request.state.auth = await self.authenticator.authenticate(request, db)
        logger.debug(f"Authenticated user {request.state.auth.user_id} for {path}")

    async def _transform(self, response: Response) -> Response:
        """Apply the response transform to JSON bodies"""
        content_type = response.headers.get("content-type", "")
        if not content_type.startswith("application/json"):
            return response

        # Buffer the streamed body
        body = b""
        async for chunk in response.body_iterator:
            body += chunk if isinstance(chunk, bytes) else chunk.encode("utf-8")

        headers = MutableHeaders(raw=[
            (key, value) for key, value in response.raw_headers if key.lower() != b"content-length"
        ])
        try:
            data = json.loads(body)
        except ValueError:
            # Not actually JSON; pass through untouched
            return Response(content=body, status_code=response.status_code, headers=headers)

        rendered = json.dumps(
            self.response_transform(data),
            ensure_ascii=False,
            allow_nan=False,
            separators=(",", ":")
        ).encode("utf-8")
        return Response(content=rendered, status_code=response.status_code, headers=headers)
