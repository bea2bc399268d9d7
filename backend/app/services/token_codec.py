"""
Bearer auth token codec.

Tokens are ``prefix + base64(payload) + suffix`` where the prefix is 20 hex
characters and the suffix 16 hex characters of fresh randomness. The random
envelope only makes tokens unique per mint; integrity comes from the payload.

Two payload schemes share the envelope:

* ``EmbeddedTokenCodec`` wraps the user id between the two halves of the
  shared secret. It is a reversible encoding, not a signature: anyone holding
  the secret can mint a token for any user, so the secret must be guarded like
  a signing key.
* ``HmacTokenCodec`` carries ``user_id + "." + HMAC-SHA256(secret, user_id)``
  and compares digests in constant time.

Neither format carries a key id, so rotating the secret invalidates every
outstanding token.
"""

import base64
import binascii
import hashlib
import hmac
import secrets
from abc import ABC, abstractmethod
from typing import Tuple

from app.core.exceptions import ConfigurationError
from app.utils.logging import get_logger

logger = get_logger(__name__)

PREFIX_BYTES = 10
SUFFIX_BYTES = 8
PREFIX_LENGTH = PREFIX_BYTES * 2
SUFFIX_LENGTH = SUFFIX_BYTES * 2

class InvalidTokenError(ValueError):
    """Token is malformed or was not minted with the configured secret"""

class TokenCodec(ABC):
    """Mints and reads bearer auth tokens without touching the database"""

    def __init__(self, secret: str):
        self._secret = secret or ""

    def _require_secret(self) -> str:
        if not self._secret:
            raise ConfigurationError("USER_TOKEN_SECRET is not set in environment variables")
        return self._secret

    @abstractmethod
    def _encode_payload(self, user_id: str) -> str:
        """Payload string for user_id, before base64"""

    @abstractmethod
    def _decode_payload(self, payload: str) -> str:
        """User id from a decoded payload; raises InvalidTokenError"""

    def mint(self, user_id: str) -> str:
        """Create a new token for user_id"""
        if not user_id:
            raise ValueError("user_id is required")
        encoded = base64.b64encode(self._encode_payload(str(user_id)).encode("utf-8")).decode("ascii")
        prefix = secrets.token_hex(PREFIX_BYTES)
        suffix = secrets.token_hex(SUFFIX_BYTES)
        return prefix + encoded + suffix

    def extract_user_id(self, token: str) -> str:
        """
        Recover the user id embedded in token

        Raises:
            ConfigurationError: If no secret is configured
            InvalidTokenError: If the token is malformed or foreign
        """
        self._require_secret()
        return self._decode_payload(_unwrap(token))

    def verify(self, token: str, user_id: str) -> bool:
        """True when token was minted for user_id under the configured secret. Fails closed."""
        try:
            return hmac.compare_digest(
                self.extract_user_id(token).encode("utf-8"),
                str(user_id).encode("utf-8")
            )
        except InvalidTokenError:
            return False
        except ConfigurationError:
            logger.error("Token verification attempted without USER_TOKEN_SECRET")
            return False

class EmbeddedTokenCodec(TokenCodec):
    """secretFirst + userId + secretSecond, split at floor(len/2)"""

    def _split_secret(self) -> Tuple[str, str]:
        secret = self._require_secret()
        split_index = len(secret) // 2
        return secret[:split_index], secret[split_index:]

    def _encode_payload(self, user_id: str) -> str:
        first, second = self._split_secret()
        return first + user_id + second

    def _decode_payload(self, payload: str) -> str:
        first, second = self._split_secret()
        # The middle segment must be non-empty and both affixes must match in place
        if len(payload) <= len(first) + len(second):
            raise InvalidTokenError("Invalid token format")
        if not payload.startswith(first) or not payload.endswith(second):
            raise InvalidTokenError("Invalid token format")
        return payload[len(first):len(payload) - len(second)]

class HmacTokenCodec(TokenCodec):
    """userId + "." + hex HMAC-SHA256 of the user id"""

    def _signature(self, user_id: str) -> str:
        key = self._require_secret().encode("utf-8")
        return hmac.new(key, user_id.encode("utf-8"), hashlib.sha256).hexdigest()

    def _encode_payload(self, user_id: str) -> str:
        return f"{user_id}.{self._signature(user_id)}"

    def _decode_payload(self, payload: str) -> str:
        user_id, sep, signature = payload.rpartition(".")
        if not sep or not user_id:
            raise InvalidTokenError("Invalid token format")
        if not hmac.compare_digest(signature.encode("utf-8"), self._signature(user_id).encode("utf-8")):
            raise InvalidTokenError("Invalid token signature")
        return user_id

def _unwrap(token: str) -> str:
    """Strip the random envelope and base64-decode the payload"""
    if not isinstance(token, str) or len(token) <= PREFIX_LENGTH + SUFFIX_LENGTH:
        raise InvalidTokenError("Invalid token length")
    encoded = token[PREFIX_LENGTH:len(token) - SUFFIX_LENGTH]
    try:
        return base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise InvalidTokenError("Invalid token encoding") from e

TOKEN_CODECS = {
    "embedded": EmbeddedTokenCodec,
    "hmac": HmacTokenCodec,
}

def build_token_codec(secret: str, scheme: str = "embedded") -> TokenCodec:
    """Codec for the configured scheme"""
    try:
        codec_cls = TOKEN_CODECS[scheme.lower()]
    except KeyError:
        raise ConfigurationError(f"Unknown AUTH_TOKEN_SCHEME '{scheme}'")
    return codec_cls(secret)
