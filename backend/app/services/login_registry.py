"""
Login registry: persisted login events with a single active login per user
"""

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy import select, update, func, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NoActiveSessionError
from app.db.models.login import LoginRecord
from app.db.models.types import LoginMethod
from app.db.utils import retry_database_operation
from app.services.token_codec import TokenCodec
from app.utils.clock import Clock, utcnow
from app.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_LOGIN_TTL = timedelta(hours=24)
SESSION_ID_BYTES = 16

@dataclass(frozen=True)
class LoginGrant:
    """What a successful record_login hands back to the caller"""
    auth_token: str
    session_id: str
    expires_at: datetime
    session_token: Optional[str] = None

class LoginRegistry:
    """Records logins and keeps exactly one of them active per user"""

    def __init__(self, codec: TokenCodec, clock: Clock = utcnow):
        self.codec = codec
        self.clock = clock

    async def record_login(
        self,
        db: AsyncSession,
        user_id: str,
        method: LoginMethod,
        device_info: Optional[Dict] = None,
        ip_address: Optional[str] = None,
        ttl: timedelta = DEFAULT_LOGIN_TTL,
        stage_session: Optional[Callable[[AsyncSession, str], str]] = None
    ) -> LoginGrant:
        """
        Mint credentials for user_id and make this login the only active one

        Deactivating the previous logins and inserting the new row happen in
        one transaction. On PostgreSQL the transaction also takes a per-user
        advisory lock; a concurrent insert that still trips the partial unique
        index is retried.

        Args:
            db: Database session
            user_id: Identifier of the authenticated user
            method: How the user authenticated
            device_info: Client description stored with the login
            ip_address: Client address
            ttl: Login lifetime
            stage_session: Called with (db, session_id) before the commit to add
                the paired session row; its return value becomes
                LoginGrant.session_token

        Returns:
            LoginGrant with the auth token, the new session id and the expiry
        """
        auth_token = self.codec.mint(user_id)
        session_id = secrets.token_hex(SESSION_ID_BYTES)
        method = LoginMethod(method)

        async def _activate() -> LoginGrant:
            now = self.clock()
            expires_at = now + ttl
            try:
                await self._lock_user(db, user_id)
                # Deactivate every earlier login of this user
                await db.execute(
                    update(LoginRecord)
                    .where(LoginRecord.user_id == user_id, LoginRecord.is_logged_in.is_(True))
                    .values(is_logged_in=False)
                    .execution_options(synchronize_session="evaluate")
                )
                # Insert the new active login
                db.add(LoginRecord(
                    user_id=user_id,
                    session_id=session_id,
                    device_info=device_info or {},
                    method=method,
                    auth_token=auth_token,
                    expires_at=expires_at,
                    ip_address=ip_address,
                    is_logged_in=True,
                    created_at=now
                ))
                # Session row commits with the login or not at all
                session_token = stage_session(db, session_id) if stage_session else None
                await db.commit()
            except Exception:
                await db.rollback()
                raise
            return LoginGrant(
                auth_token=auth_token,
                session_id=session_id,
                expires_at=expires_at,
                session_token=session_token
            )

        # Losing a race on the partial unique index is retried
        grant = await retry_database_operation(
            _activate, max_retries=2, initial_delay=0.05, retry_on=(IntegrityError,)
        )
        logger.info(f"Recorded {method.value} login for user {user_id} (session {session_id})")
        return grant

    async def revoke_all(self, db: AsyncSession, user_id: str) -> int:
        """
        Log the user out everywhere

        Returns:
            Number of logins that were active

        Raises:
            NoActiveSessionError: If the user had no active login
        """
        try:
            result = await db.execute(
                update(LoginRecord)
                .where(LoginRecord.user_id == user_id, LoginRecord.is_logged_in.is_(True))
                .values(is_logged_in=False)
                .execution_options(synchronize_session="evaluate")
            )
            revoked = result.rowcount or 0
            # Nothing to revoke
            if not revoked:
                await db.rollback()
                raise NoActiveSessionError()
            await db.commit()
        except NoActiveSessionError:
            raise
        except Exception:
            await db.rollback()
            raise

        logger.info(f"Revoked {revoked} active login(s) for user {user_id}")
        return revoked

    async def lookup_active(self, db: AsyncSession, user_id: str, auth_token: str) -> Optional[LoginRecord]:
        """
        Active login row for this exact token, or None

        Expiry is not filtered here so callers can tell a missing login from
        an expired one.
        """
        stmt = (
            select(LoginRecord)
            .where(
                LoginRecord.user_id == user_id,
                LoginRecord.auth_token == auth_token,
                LoginRecord.is_logged_in.is_(True)
            )
            .order_by(LoginRecord.created_at.desc())
            .limit(1)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_logins(self, db: AsyncSession, user_id: str, limit: int = 20) -> List[LoginRecord]:
        """Login history for user_id, newest first"""
        stmt = (
            select(LoginRecord)
            .where(LoginRecord.user_id == user_id)
            .order_by(LoginRecord.created_at.desc())
            .limit(limit)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def count_active(self, db: AsyncSession, user_id: str) -> int:
        stmt = select(func.count()).select_from(LoginRecord).where(
            LoginRecord.user_id == user_id,
            LoginRecord.is_logged_in.is_(True)
        )
        return (await db.execute(stmt)).scalar_one()

    async def _lock_user(self, db: AsyncSession, user_id: str) -> None:
        """Serialize concurrent logins of one user for the rest of the transaction"""
        bind = db.bind
        if bind is not None and bind.dialect.name == "postgresql":
            # Released at commit or rollback
            await db.execute(
                text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
                {"key": f"manage_logins:{user_id}"}
            )
