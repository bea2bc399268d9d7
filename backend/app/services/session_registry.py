"""
Session registry: the second credential issued alongside each login
"""

import secrets
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.session import SessionRecord
from app.services.background_tasks import BackgroundTaskManager
from app.utils.clock import Clock, utcnow
from app.utils.logging import get_logger

logger = get_logger(__name__)

SESSION_TOKEN_BYTES = 32

class SessionRegistry:
    """
    Stores session rows keyed by session_id

    A session has no expiry of its own. It stops being usable once the login
    sharing its session_id is logged out or expires.
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
        background_tasks: Optional[BackgroundTaskManager] = None,
        clock: Clock = utcnow
    ):
        self.session_factory = session_factory
        self.background_tasks = background_tasks
        self.clock = clock

    def stage_session(
        self,
        db: AsyncSession,
        session_id: str,
        user_agent: Optional[str] = None,
        accept_language: Optional[str] = None,
        platform: str = "",
        screen_resolution: str = "",
        timezone_offset: Optional[int] = None
    ) -> str:
        """
        Add a session row for session_id to db without committing

        Lets the caller commit it in the same transaction as the login that
        owns session_id. Returns the new session token.
        """
        session_token = secrets.token_hex(SESSION_TOKEN_BYTES)
        now = self.clock()
        db.add(SessionRecord(
            session_id=session_id,
            session_token=session_token,
            user_agent=user_agent or "",
            language=accept_language or "",
            # Client hints; clients are not required to send them
            platform=platform or "",
            screen_resolution=screen_resolution or "",
            timezone_offset=timezone_offset,
            generated_at=now,
            last_access=now
        ))
        return session_token

    async def record_session(
        self,
        db: AsyncSession,
        session_id: str,
        user_agent: Optional[str] = None,
        accept_language: Optional[str] = None,
        platform: str = "",
        screen_resolution: str = "",
        timezone_offset: Optional[int] = None
    ) -> str:
        """Insert and commit a session row for session_id and return its token"""
        session_token = self.stage_session(
            db, session_id, user_agent, accept_language, platform, screen_resolution, timezone_offset
        )
        try:
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.debug(f"Recorded session {session_id}")
        return session_token

    async def lookup(self, db: AsyncSession, session_id: str, session_token: str) -> Optional[SessionRecord]:
        """
        Session row matching both session_id and session_token, or None

        A hit schedules a last_access update that never fails the lookup.
        """
        stmt = select(SessionRecord).where(
            SessionRecord.session_id == session_id,
            SessionRecord.session_token == session_token
        )
        result = await db.execute(stmt)
        record = result.scalar_one_or_none()
        if record is None:
            return None

        touched_at = self.clock()
        if self.background_tasks is not None and self.session_factory is not None:
            self.background_tasks.add_task(
                self._touch_in_own_session(session_id, touched_at),
                name=f"touch-session-{session_id}"
            )
        else:
            await self._touch(db, session_id, touched_at)
        return record

    async def _touch_in_own_session(self, session_id: str, touched_at) -> None:
        try:
            async with self.session_factory() as db:
                await self._touch(db, session_id, touched_at)
        except Exception as e:
            logger.warning(f"Could not open a session to update last_access for {session_id}: {str(e)}")

    async def _touch(self, db: AsyncSession, session_id: str, touched_at) -> None:
        try:
            await db.execute(
                update(SessionRecord)
                .where(SessionRecord.session_id == session_id)
                .values(last_access=touched_at)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        except Exception as e:
            logger.warning(f"Failed to update last_access for session {session_id}: {str(e)}", exc_info=True)
            await db.rollback()
