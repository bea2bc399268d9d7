"""
Tests for credential issuing in the auth service
"""

import pytest
from sqlalchemy import func, select

from app.db.models.login import LoginRecord
from app.db.models.session import SessionRecord
from app.db.models.types import LoginMethod
from app.services.auth import AuthService, ClientInfo
from app.services.session_registry import SessionRegistry

class FailingSessionRegistry(SessionRegistry):
    """Session registry whose insert always fails"""

    def stage_session(self, db, session_id, *args, **kwargs):
        raise RuntimeError("session insert failed")

async def _count(session_factory, model):
    async with session_factory() as db:
        return (await db.execute(select(func.count()).select_from(model))).scalar_one()

async def test_issue_credentials_records_login_and_session(db_session, session_factory, login_registry, session_registry, clock):
    service = AuthService(login_registry, session_registry, clock=clock)
    client = ClientInfo(ip_address="1.2.3.4", user_agent="pytest", accept_language="en", platform="web")

    credentials = await service.issue_credentials(db_session, "u1", LoginMethod.PASSWORD, client)

    assert set(credentials) == {"authToken", "sessionToken", "sessionId", "expiresAt"}
    async with session_factory() as db:
        record = await session_registry.lookup(db, credentials["sessionId"], credentials["sessionToken"])
    assert record is not None
    assert record.platform == "web"
    assert await login_registry.count_active(db_session, "u1") == 1

async def test_failed_session_insert_leaves_no_login(db_session, session_factory, login_registry, clock):
    service = AuthService(login_registry, FailingSessionRegistry(clock=clock), clock=clock)

    with pytest.raises(RuntimeError):
        await service.issue_credentials(db_session, "u1", LoginMethod.PASSWORD, ClientInfo(user_agent="pytest"))

    assert await login_registry.count_active(db_session, "u1") == 0
    assert await _count(session_factory, LoginRecord) == 0
    assert await _count(session_factory, SessionRecord) == 0
