from typing import Any, Dict, Optional
from fastapi import status

LOGIN_REQUIRED_MESSAGE = "Please log in to access this resource"

class BaseAppException(Exception):
    """Base exception for all application exceptions"""
    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}
        self.headers = headers or {}
        super().__init__(message)

class ConfigurationError(BaseAppException):
    """Required configuration is missing or unusable"""
    def __init__(self, message: str):
        super().__init__(
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            error_code="CONFIGURATION_ERROR"
        )

class AuthenticationError(BaseAppException):
    """Authentication related errors.

    The error code carries the machine-readable reason; the message stays
    generic so responses do not reveal which check failed.
    """
    def __init__(self, message: str = LOGIN_REQUIRED_MESSAGE, error_code: str = "AUTH_ERROR"):
        super().__init__(
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
            error_code=error_code
        )

class MalformedCredentialError(BaseAppException):
    """A credential was supplied but could not be decoded"""
    def __init__(self, message: str):
        super().__init__(
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            error_code="MALFORMED_CREDENTIAL"
        )

class RateLimitedError(BaseAppException):
    """Client exceeded the request budget and is temporarily blocked"""
    def __init__(self, retry_after: int):
        super().__init__(
            message="Too many requests. Your IP is temporarily blocked.",
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            error_code="RATE_LIMITED",
            details={"retry_after": retry_after},
            headers={"Retry-After": str(retry_after)}
        )

class DatabaseError(BaseAppException):
    """Database related errors"""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            error_code="DATABASE_ERROR",
            details=details
        )

class ValidationError(BaseAppException):
    """Data validation errors"""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, error_code: str = "VALIDATION_ERROR"):
        super().__init__(
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            error_code=error_code,
            details=details
        )

class NoActiveSessionError(ValidationError):
    """Logout requested for a user with nothing to log out"""
    def __init__(self, message: str = "No active session found for this user."):
        super().__init__(message=message, error_code="NO_ACTIVE_SESSION")

class AccountLockedError(BaseAppException):
    """Too many failed password attempts"""
    def __init__(self, minutes_remaining: int):
        super().__init__(
            message=f"Too many failed attempts. Account is locked. Try again after {minutes_remaining} minutes.",
            status_code=status.HTTP_403_FORBIDDEN,
            error_code="ACCOUNT_LOCKED",
            details={"minutes_remaining": minutes_remaining}
        )

class ConflictError(BaseAppException):
    """Resource already exists"""
    def __init__(self, message: str):
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            error_code="CONFLICT"
        )

class IdentityProviderError(BaseAppException):
    """OAuth identity provider related errors"""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_502_BAD_GATEWAY,
            error_code="IDENTITY_PROVIDER_ERROR",
            details=details
        )
