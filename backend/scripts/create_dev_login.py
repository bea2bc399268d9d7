#!/usr/bin/env python3
"""
Script to create a login for local testing.

Records a password-method login and its session for the given user id and
prints the headers a client has to send, including a fresh ts token (valid
for FRESHNESS_MAX_AGE_SECONDS).

Usage: python scripts/create_dev_login.py <user_id>
"""

import asyncio
import sys
from pathlib import Path

# Add the parent directory to the path so we can import app modules
sys.path.append(str(Path(__file__).resolve().parent.parent))

from app.core.config import get_settings
from app.db.database import build_engine, build_session_factory
from app.db.models.types import LoginMethod
from app.services.freshness import encode_freshness_token
from app.services.login_registry import LoginRegistry
from app.services.session_registry import SessionRegistry
from app.services.token_codec import build_token_codec
from app.utils.clock import to_epoch_ms, utcnow

async def create_dev_login(user_id: str):
    """Create a login and session for user_id and print the request headers"""
    settings = get_settings()
    codec = build_token_codec(settings.require_token_secret(), settings.auth_token_scheme)
    engine = build_engine(settings.database_url)
    session_factory = build_session_factory(engine)

    try:
        async with session_factory() as db:
            sessions = SessionRegistry()
            grant = await LoginRegistry(codec).record_login(
                db, user_id, LoginMethod.PASSWORD, {"user_agent": "create_dev_login"}, "127.0.0.1",
                stage_session=lambda session, session_id: sessions.stage_session(
                    session, session_id, "create_dev_login", "en"
                )
            )
    finally:
        await engine.dispose()

    print(f"Created login for user {user_id}, expires at {grant.expires_at.isoformat()}")
    print("\nSend these headers with each request:")
    print(f"  Authorization: Bearer {grant.auth_token}")
    print(f"  X-Session-Token: {grant.session_token}")
    print(f"  x-user-id: {user_id}")
    print(f"  ts: {encode_freshness_token(to_epoch_ms(utcnow()))}")

if __name__ == "__main__":
    if len(sys.argv) != 2:
        print(__doc__)
        sys.exit(1)
    asyncio.run(create_dev_login(sys.argv[1]))
