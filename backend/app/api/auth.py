"""
Authentication routes: password signup/login, logout and credential checks
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import AuthenticationError
from app.db.database import get_db
from app.dependencies.auth import (
    get_auth_service,
    get_authenticator,
    get_client_info,
    require_auth
)
from app.middleware.request_gate import AuthContext, RequestAuthenticator
from app.services.auth import AuthService, ClientInfo
from app.services.freshness import encode_freshness_token
from app.utils.clock import to_epoch_ms
from app.utils.logging import get_logger

router = APIRouter()
logger = get_logger(__name__)

class SignupRequest(BaseModel):
    """Request model for password signup"""
    email: str
    password: str
    username: str

class LoginRequest(BaseModel):
    """Request model for password login"""
    email: str
    password: str

class CredentialsResponse(BaseModel):
    """Credentials a client presents on every protected request"""
    user: Dict[str, Any]
    authToken: str
    sessionToken: str
    sessionId: str
    expiresAt: datetime

class LoginEntry(BaseModel):
    session_id: str
    method: str
    device_info: Dict[str, Any]
    ip_address: Optional[str] = None
    is_logged_in: bool
    expires_at: datetime
    created_at: datetime
    current: bool = False

class ValidateResponse(BaseModel):
    valid: bool
    userId: Optional[str] = None

class TsResponse(BaseModel):
    ts: str
    generatedAt: int

def _credentials_response(user, credentials: Dict[str, Any]) -> CredentialsResponse:
    return CredentialsResponse(user=user.to_dict(), **credentials)

@router.post("/signup", response_model=CredentialsResponse, status_code=status.HTTP_201_CREATED)
async def signup(
    body: SignupRequest,
    db: AsyncSession = Depends(get_db),
    auth_service: AuthService = Depends(get_auth_service),
    client: ClientInfo = Depends(get_client_info)
):
    """Create a password account and sign it in"""
    user, credentials = await auth_service.signup(db, body.email, body.password, body.username, client)
    return _credentials_response(user, credentials)

@router.post("/login", response_model=CredentialsResponse)
async def login(
    body: LoginRequest,
    db: AsyncSession = Depends(get_db),
    auth_service: AuthService = Depends(get_auth_service),
    client: ClientInfo = Depends(get_client_info)
):
    """Sign in with email and password; any previous login of the user ends"""
    user, credentials = await auth_service.login_with_password(db, body.email, body.password, client)
    logger.info(f"Password login for user {user.id}")
    return _credentials_response(user, credentials)

@router.post("/logout")
async def logout(
    auth: AuthContext = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
    auth_service: AuthService = Depends(get_auth_service)
):
    """End every active login of the caller"""
    revoked = await auth_service.logout(db, auth.user_id)
    return {"message": "Logged out successfully.", "revoked": revoked}

@router.get("/validate", response_model=ValidateResponse)
async def validate(
    request: Request,
    db: AsyncSession = Depends(get_db),
    authenticator: RequestAuthenticator = Depends(get_authenticator)
):
    """Report whether the presented credentials would pass the gate"""
    try:
        auth = await authenticator.authenticate(request, db)
    except AuthenticationError:
        return ValidateResponse(valid=False)
    return ValidateResponse(valid=True, userId=auth.user_id)

@router.get("/me")
async def me(
    auth: AuthContext = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
    auth_service: AuthService = Depends(get_auth_service)
):
    """Profile of the authenticated user"""
    user = await auth_service.get_user(db, auth.user_id)
    if user is None:
        # Login rows outlived the account
        raise AuthenticationError(error_code="NOT_LOGGED_IN")
    return {"user": user.to_dict(), "sessionId": auth.session_id, "method": auth.method}

@router.get("/logins", response_model=List[LoginEntry])
async def list_logins(
    auth: AuthContext = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
    auth_service: AuthService = Depends(get_auth_service)
):
    """Recent logins of the caller, newest first"""
    records = await auth_service.login_registry.list_logins(db, auth.user_id)
    return [
        LoginEntry(
            session_id=record.session_id,
            method=record.method.value,
            device_info=record.device_info or {},
            ip_address=record.ip_address,
            is_logged_in=record.is_logged_in,
            expires_at=record.expires_at,
            created_at=record.created_at,
            current=record.session_id == auth.session_id
        )
        for record in records
    ]

@router.get("/ts", response_model=TsResponse)
async def issue_ts(request: Request):
    """Server-stamped freshness token"""
    generated_at = to_epoch_ms(request.app.state.clock())
    return TsResponse(ts=encode_freshness_token(generated_at), generatedAt=generated_at)
