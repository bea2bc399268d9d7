"""
Authentication-related dependencies for FastAPI
"""

from fastapi import Request

from app.core.config import Settings
from app.core.exceptions import AuthenticationError
from app.middleware.request_gate import AuthContext, RequestAuthenticator
from app.services.auth import AuthService, ClientInfo
from app.services.identity import IdentityProviderClient

async def require_auth(request: Request) -> AuthContext:
    """
    Identity established by the request gate

    Raises:
        AuthenticationError: If the gate let the request through without
            credentials (public path or public marker)
    """
    auth = getattr(request.state, "auth", None)
    if auth is None:
        raise AuthenticationError(error_code="MISSING_CREDENTIALS")
    return auth

def get_settings_dependency(request: Request) -> Settings:
    return request.app.state.settings

def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service

def get_authenticator(request: Request) -> RequestAuthenticator:
    return request.app.state.authenticator

def get_identity_client(request: Request) -> IdentityProviderClient:
    return request.app.state.identity_client

def get_client_info(request: Request) -> ClientInfo:
    """Device details recorded with a new login"""
    return ClientInfo.from_request(request, request.app.state.settings.trust_forwarded_for)
