"""
Third-party identity providers (Google, GitHub)

The provider authenticates the end user; this module only runs the
authorization-code exchange and normalizes the returned profile. The OAuth
``state`` parameter is a short-lived JWT so no server-side state is kept
between the redirect and the callback.
"""

import secrets
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx
import jwt

from app.core.config import Settings
from app.core.exceptions import IdentityProviderError, ValidationError
from app.db.models.types import IdentityProvider
from app.utils.clock import Clock, utcnow
from app.utils.logging import get_logger

logger = get_logger(__name__)

OAUTH_PROVIDERS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "emails_url": "https://api.github.com/user/emails",
        "scope": "read:user user:email",
    },
}

STATE_TTL = timedelta(minutes=10)
STATE_AUDIENCE = "oauth-state"

@dataclass
class IdentityProfile:
    """Normalized profile handed back by a provider"""
    provider: IdentityProvider
    provider_user_id: str
    email: str
    display_name: Optional[str] = None
    picture: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

class IdentityProviderClient:
    """Runs the OAuth authorization-code flow against the configured providers"""

    def __init__(
        self,
        settings: Settings,
        clock: Clock = utcnow,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.settings = settings
        self.clock = clock
        self.transport = transport

    def _credentials(self, provider: str) -> tuple:
        if provider not in OAUTH_PROVIDERS:
            raise ValidationError(f"Unsupported identity provider: {provider}", error_code="UNSUPPORTED_PROVIDER")
        if provider == "google":
            client_id, client_secret = self.settings.google_client_id, self.settings.google_client_secret
        else:
            client_id, client_secret = self.settings.github_client_id, self.settings.github_client_secret
        if not client_id or not client_secret:
            logger.warning(f"OAuth provider {provider} is not configured")
            raise IdentityProviderError(f"OAuth provider {provider} is not configured")
        return client_id, client_secret

    def redirect_uri(self, provider: str) -> str:
        return f"{self.settings.oauth_redirect_base.rstrip('/')}/auth/{provider}/callback"

    def sign_state(self, provider: str) -> str:
        now = self.clock()
        claims = {
            "aud": STATE_AUDIENCE,
            "provider": provider,
            "nonce": secrets.token_hex(8),
            "iat": now,
            "exp": now + STATE_TTL,
        }
        return jwt.encode(claims, self.settings.require_token_secret(), algorithm="HS256")

    def verify_state(self, state: Optional[str], provider: str) -> None:
        """Reject callbacks whose state was not issued here for this provider"""
        if not state:
            raise ValidationError("Missing OAuth state", error_code="INVALID_OAUTH_STATE")
        try:
            claims = jwt.decode(
                state,
                self.settings.require_token_secret(),
                algorithms=["HS256"],
                audience=STATE_AUDIENCE,
                options={"verify_exp": False, "verify_iat": False}
            )
        except jwt.InvalidTokenError as e:
            raise ValidationError("Invalid OAuth state", error_code="INVALID_OAUTH_STATE") from e

        # Expiry is checked against the injected clock rather than wall time
        if claims.get("provider") != provider or claims.get("exp", 0) < int(self.clock().timestamp()):
            raise ValidationError("Invalid OAuth state", error_code="INVALID_OAUTH_STATE")

    def authorization_url(self, provider: str) -> str:
        """Provider consent page URL carrying a freshly signed state"""
        client_id, _ = self._credentials(provider)
        config = OAUTH_PROVIDERS[provider]
        params = {
            "client_id": client_id,
            "redirect_uri": self.redirect_uri(provider),
            "response_type": "code",
            "scope": config["scope"],
            "state": self.sign_state(provider),
        }
        if provider == "google":
            params["prompt"] = "select_account"
        return f"{config['auth_url']}?{urlencode(params)}"

    async def exchange_code(self, provider: str, code: str) -> IdentityProfile:
        """
        Trade an authorization code for the user's profile

        Raises:
            IdentityProviderError: If the provider rejects the exchange or
                returns a profile without an id or email
        """
        client_id, client_secret = self._credentials(provider)
        config = OAUTH_PROVIDERS[provider]

        try:
            async with httpx.AsyncClient(timeout=30.0, follow_redirects=False, transport=self.transport) as client:
                token_response = await client.post(
                    config["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": self.redirect_uri(provider),
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = token_result.get("access_token") if isinstance(token_result, dict) else None
                if not access_token:
                    raise IdentityProviderError(f"{provider} did not return an access token")

                headers = {"Authorization": f"Bearer {access_token}"}
                if provider == "github":
                    headers["Accept"] = "application/vnd.github+json"

                userinfo_response = await client.get(config["userinfo_url"], headers=headers)
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    raise IdentityProviderError(f"{provider} returned an invalid profile")

                profile = self._parse_userinfo(provider, userinfo)

                # GitHub omits private emails from /user
                if provider == "github" and not profile.email:
                    emails_response = await client.get(config["emails_url"], headers=headers)
                    if emails_response.status_code == 200:
                        profile.email = next(
                            (e.get("email") for e in emails_response.json()
                             if isinstance(e, dict) and e.get("primary") and e.get("verified")),
                            ""
                        ) or ""
        except httpx.HTTPStatusError as e:
            logger.error(f"OAuth exchange with {provider} failed with HTTP {e.response.status_code}")
            raise IdentityProviderError(
                f"{provider} rejected the authorization code",
                details={"status_code": e.response.status_code}
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"OAuth exchange with {provider} failed: {str(e)}")
            raise IdentityProviderError(f"Could not reach {provider}") from e

        if not profile.provider_user_id or not profile.email:
            logger.error(f"{provider} profile is missing an id or email")
            raise IdentityProviderError(f"{provider} profile is missing an id or email")

        logger.info(f"OAuth exchange with {provider} succeeded for provider user {profile.provider_user_id}")
        return profile

    @staticmethod
    def _parse_userinfo(provider: str, userinfo: Dict[str, Any]) -> IdentityProfile:
        if provider == "google":
            return IdentityProfile(
                provider=IdentityProvider.GOOGLE,
                provider_user_id=str(userinfo.get("id") or userinfo.get("sub") or ""),
                email=(userinfo.get("email") or "").strip().lower(),
                display_name=userinfo.get("name"),
                picture=userinfo.get("picture"),
                raw=userinfo,
            )
        return IdentityProfile(
            provider=IdentityProvider.GITHUB,
            provider_user_id=str(userinfo.get("id") or ""),
            email=(userinfo.get("email") or "").strip().lower(),
            display_name=userinfo.get("name") or userinfo.get("login"),
            picture=userinfo.get("avatar_url"),
            raw=userinfo,
        )
