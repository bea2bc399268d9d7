"""
Identity provider login: redirect to the provider, handle its callback
"""

import json
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import BaseAppException
from app.db.database import get_db
from app.dependencies.auth import (
    get_auth_service,
    get_client_info,
    get_identity_client
)
from app.services.auth import AuthService, ClientInfo
from app.services.identity import IdentityProviderClient
from app.utils.logging import get_logger

router = APIRouter()
logger = get_logger(__name__)

def _frontend_callback(request: Request, provider: str, **params) -> RedirectResponse:
    frontend_url = request.app.state.settings.frontend_url.rstrip("/")
    return RedirectResponse(f"{frontend_url}/auth/{provider}/callback?{urlencode(params)}", status_code=302)

@router.get("/{provider}")
async def start_login(
    provider: str,
    identity_client: IdentityProviderClient = Depends(get_identity_client)
):
    """Send the browser to the provider's consent page"""
    return RedirectResponse(identity_client.authorization_url(provider), status_code=302)

@router.get("/{provider}/callback")
async def finish_login(
    provider: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    auth_service: AuthService = Depends(get_auth_service),
    identity_client: IdentityProviderClient = Depends(get_identity_client),
    client: ClientInfo = Depends(get_client_info)
):
    """
    Complete the provider login and hand the credentials to the frontend

    Failures redirect to the frontend with error=auth_failed instead of
    rendering an error page.
    """
    code = request.query_params.get("code")
    if request.query_params.get("error") or not code:
        logger.warning(f"{provider} callback without an authorization code")
        return _frontend_callback(request, provider, error="auth_failed")

    try:
        identity_client.verify_state(request.query_params.get("state"), provider)
        profile = await identity_client.exchange_code(provider, code)
        user, credentials = await auth_service.login_with_identity(db, profile, client)
    except BaseAppException as e:
        logger.warning(f"{provider} login failed: {e.error_code} - {e.message}")
        return _frontend_callback(request, provider, error="auth_failed")

    logger.info(f"{provider} login for user {user.id}")
    return _frontend_callback(
        request,
        provider,
        user=json.dumps(user.to_dict()),
        userId=user.id,
        authToken=credentials["authToken"],
        sessionToken=credentials["sessionToken"],
        expiresAt=credentials["expiresAt"].isoformat()
    )
