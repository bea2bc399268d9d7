"""
Authentication service: the login-issuing side of the auth subsystem

Every successful login (password or identity provider) goes through
issue_credentials, which records the login and its paired session and hands
back the three values a client presents on later requests.
"""

import math
import re
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple

import bcrypt
from fastapi import Request
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    ValidationError
)
from app.db.models.oauth_identity import OAuthIdentity
from app.db.models.security import FailedLoginAttempt
from app.db.models.types import IdentityProvider, LoginMethod
from app.db.models.user import User
from app.services.identity import IdentityProfile
from app.services.login_registry import DEFAULT_LOGIN_TTL, LoginRegistry
from app.services.session_registry import SessionRegistry
from app.utils.clock import Clock, utcnow
from app.utils.logging import get_logger

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MIN_PASSWORD_LENGTH = 8
BCRYPT_ROUNDS = 12

def hash_password(password: str) -> str:
    """Hash a password using bcrypt"""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")

def verify_password(password: str, password_hash: Optional[str]) -> bool:
    """Verify a password against its hash"""
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False

def generate_username(base: str) -> str:
    """Requested name with six random digits appended"""
    return f"{base.strip()}{secrets.randbelow(900000) + 100000}"

def client_ip(request: Request, trust_forwarded_for: bool = False) -> str:
    """Client address, from X-Forwarded-For only when the proxy is trusted"""
    if trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"

@dataclass
class ClientInfo:
    """What the login flows record about the calling device"""
    ip_address: Optional[str] = None
    user_agent: str = ""
    accept_language: str = ""
    platform: str = ""
    screen_resolution: str = ""
    timezone_offset: Optional[int] = None

    @classmethod
    def from_request(cls, request: Request, trust_forwarded_for: bool = False) -> "ClientInfo":
        offset = request.headers.get("x-timezone-offset")
        try:
            timezone_offset = int(offset) if offset is not None else None
        except ValueError:
            timezone_offset = None
        return cls(
            ip_address=client_ip(request, trust_forwarded_for),
            user_agent=request.headers.get("user-agent", ""),
            accept_language=request.headers.get("accept-language", ""),
            platform=request.headers.get("x-platform", ""),
            screen_resolution=request.headers.get("x-screen-resolution", ""),
            timezone_offset=timezone_offset,
        )

    def device_info(self) -> Dict[str, Any]:
        info = {"user_agent": self.user_agent}
        if self.platform:
            info["platform"] = self.platform
        return info

class AuthService:
    """Signs users in and issues the auth token / session token pair"""

    def __init__(
        self,
        login_registry: LoginRegistry,
        session_registry: SessionRegistry,
        clock: Clock = utcnow,
        login_ttl: timedelta = DEFAULT_LOGIN_TTL,
        max_failed_logins: int = 5,
        lockout: timedelta = timedelta(minutes=30)
    ):
        self.login_registry = login_registry
        self.session_registry = session_registry
        self.clock = clock
        self.login_ttl = login_ttl
        self.max_failed_logins = max_failed_logins
        self.lockout = lockout

    async def issue_credentials(
        self,
        db: AsyncSession,
        user_id: str,
        method: LoginMethod,
        client: ClientInfo
    ) -> Dict[str, Any]:
        """
        Record a login plus its session and return the client credentials

        Both rows are written in one transaction, so a failed session insert
        leaves no login behind.

        Returns:
            Dict with authToken, sessionToken, sessionId and expiresAt
        """
        grant = await self.login_registry.record_login(
            db,
            user_id,
            method,
            device_info=client.device_info(),
            ip_address=client.ip_address,
            ttl=self.login_ttl,
            stage_session=lambda session, session_id: self.session_registry.stage_session(
                session,
                session_id,
                user_agent=client.user_agent,
                accept_language=client.accept_language,
                platform=client.platform,
                screen_resolution=client.screen_resolution,
                timezone_offset=client.timezone_offset
            )
        )
        return {
            "authToken": grant.auth_token,
            "sessionToken": grant.session_token,
            "sessionId": grant.session_id,
            "expiresAt": grant.expires_at,
        }

    async def signup(
        self,
        db: AsyncSession,
        email: str,
        password: str,
        username: str,
        client: ClientInfo
    ) -> Tuple[User, Dict[str, Any]]:
        """
        Create a password account and sign it in

        An existing account that only ever used an identity provider gets the
        password attached and keeps its username.

        Raises:
            ValidationError: Missing fields, bad email or weak password
            ConflictError: The email already has a password account
        """
        if not email or not password or not (username or "").strip():
            raise ValidationError("All fields are required.")
        email = email.strip().lower()
        if not EMAIL_PATTERN.match(email):
            raise ValidationError("Invalid email format.")
        if (len(password) < MIN_PASSWORD_LENGTH
                or not re.search(r"[A-Za-z]", password)
                or not re.search(r"[0-9]", password)):
            raise ValidationError("Password must be at least 8 characters long and include letters and numbers.")

        user = await self._user_by_email(db, email)
        if user is not None and user.password_hash:
            raise ConflictError("An account with this email already exists.")

        try:
            if user is None:
                user = User(
                    email=email,
                    username=generate_username(username),
                    password_hash=hash_password(password),
                    public_connected=True,
                    created_at=self.clock()
                )
                db.add(user)
            else:
                user.password_hash = hash_password(password)
                user.public_connected = True
            await db.commit()
        except IntegrityError as e:
            await db.rollback()
            raise ConflictError("An account with this email already exists.") from e

        logger.info(f"Signed up user {user.id}")
        credentials = await self.issue_credentials(db, user.id, LoginMethod.PASSWORD, client)
        return user, credentials

    async def login_with_password(
        self,
        db: AsyncSession,
        email: str,
        password: str,
        client: ClientInfo
    ) -> Tuple[User, Dict[str, Any]]:
        """
        Check email and password and sign the user in

        Failures are counted per (email, ip); reaching the limit locks that
        pair out for the lockout period.

        Raises:
            ValidationError: Missing email or password
            AccountLockedError: The pair is locked out
            AuthenticationError: Unknown email or wrong password
        """
        if not email or not password:
            raise ValidationError("Email and password are required.")
        email = email.strip().lower()
        ip_address = client.ip_address or "unknown"
        now = self.clock()

        attempt = await self._failed_attempt(db, email, ip_address)
        if attempt is not None and attempt.locked_until is not None:
            if now < attempt.locked_until:
                minutes = math.ceil((attempt.locked_until - now).total_seconds() / 60)
                raise AccountLockedError(minutes)
            # Lock has run out; start counting again
            attempt.failed_attempts = 0
            attempt.locked_until = None

        user = await self._user_by_email(db, email)
        if user is None or not verify_password(password, user.password_hash):
            await self._record_failure(db, attempt, email, ip_address, now)
            raise AuthenticationError(message="Invalid email or password.", error_code="INVALID_CREDENTIALS")

        if attempt is not None:
            await db.delete(attempt)
            await db.commit()

        credentials = await self.issue_credentials(db, user.id, LoginMethod.PASSWORD, client)
        return user, credentials

    async def login_with_identity(
        self,
        db: AsyncSession,
        profile: IdentityProfile,
        client: ClientInfo
    ) -> Tuple[User, Dict[str, Any]]:
        """
        Sign in a user vouched for by an identity provider

        Finds the account by email or creates one with a generated username,
        marks the provider as connected and refreshes the stored profile.
        """
        provider = IdentityProvider(profile.provider)
        email = profile.email.strip().lower()
        now = self.clock()

        try:
            user = await self._user_by_email(db, email)
            if user is None:
                user = User(email=email, username=generate_username("user"), created_at=now)
                db.add(user)
                await db.flush()
                logger.info(f"Created user {user.id} from {provider.value} profile")

            if provider == IdentityProvider.GOOGLE:
                user.google_connected = True
            else:
                user.github_connected = True

            stmt = select(OAuthIdentity).where(
                OAuthIdentity.provider == provider,
                OAuthIdentity.provider_user_id == profile.provider_user_id
            )
            identity = (await db.execute(stmt)).scalar_one_or_none()
            if identity is None:
                identity = OAuthIdentity(provider=provider, provider_user_id=profile.provider_user_id)
                db.add(identity)
            identity.user_id = user.id
            identity.email = email
            identity.display_name = profile.display_name
            identity.picture = profile.picture
            identity.raw_profile = profile.raw or {}
            identity.updated_at = now
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        credentials = await self.issue_credentials(db, user.id, LoginMethod(provider.value), client)
        return user, credentials

    async def logout(self, db: AsyncSession, user_id: str) -> int:
        return await self.login_registry.revoke_all(db, user_id)

    async def get_user(self, db: AsyncSession, user_id: str) -> Optional[User]:
        return await db.get(User, user_id)

    async def _user_by_email(self, db: AsyncSession, email: str) -> Optional[User]:
        result = await db.execute(select(User).where(User.email == email))
        return result.scalar_one_or_none()

    async def _failed_attempt(self, db: AsyncSession, email: str, ip_address: str) -> Optional[FailedLoginAttempt]:
        stmt = select(FailedLoginAttempt).where(
            FailedLoginAttempt.email == email,
            FailedLoginAttempt.ip_address == ip_address
        )
        return (await db.execute(stmt)).scalar_one_or_none()

    async def _record_failure(
        self,
        db: AsyncSession,
        attempt: Optional[FailedLoginAttempt],
        email: str,
        ip_address: str,
        now
    ) -> None:
        if attempt is None:
            attempt = FailedLoginAttempt(email=email, ip_address=ip_address, failed_attempts=0)
            db.add(attempt)
        attempt.failed_attempts = (attempt.failed_attempts or 0) + 1
        if attempt.failed_attempts >= self.max_failed_logins:
            attempt.locked_until = now + self.lockout
            logger.warning(f"Locked out {email} from {ip_address} after {attempt.failed_attempts} failed logins")
        try:
            await db.commit()
        except Exception:
            await db.rollback()
            raise
