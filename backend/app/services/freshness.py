"""
Freshness ("ts") tokens bound a replayed request to a short time window.

A token is base64 of the JSON object ``{"generatedAt": <epoch millis>}``.
Decoding also accepts the URL-safe alphabet and missing padding.
"""

import base64
import binascii
import json
import math
from typing import Optional

from app.core.exceptions import AuthenticationError, MalformedCredentialError

DEFAULT_MAX_AGE_MS = 20_000

_URLSAFE_TO_STANDARD = str.maketrans("-_", "+/")

def encode_freshness_token(generated_at_ms: int) -> str:
    payload = json.dumps({"generatedAt": int(generated_at_ms)}, separators=(",", ":"))
    return base64.b64encode(payload.encode("utf-8")).decode("ascii")

def decode_freshness_token(token: str) -> int:
    """
    Return the generatedAt stamp carried by token

    Raises:
        MalformedCredentialError: If the token is not base64 JSON with a
            numeric generatedAt
    """
    # Normalize to padded standard base64
    normalized = token.strip().translate(_URLSAFE_TO_STANDARD).rstrip("=")
    normalized += "=" * (-len(normalized) % 4)
    try:
        data = json.loads(base64.b64decode(normalized, validate=True).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise MalformedCredentialError("Invalid TS token") from e

    generated_at = data.get("generatedAt") if isinstance(data, dict) else None
    # bool is an int subclass
    if isinstance(generated_at, bool) or not isinstance(generated_at, (int, float)):
        raise MalformedCredentialError("Invalid TS token")
    if not math.isfinite(generated_at):
        raise MalformedCredentialError("Invalid TS token")
    return int(generated_at)

def check_freshness(token: Optional[str], now_ms: int, max_age_ms: int = DEFAULT_MAX_AGE_MS) -> int:
    """
    Validate a ts token against the current time

    Tokens stamped further in the future than max_age_ms are treated like
    expired ones.

    Returns:
        The token's generatedAt stamp

    Raises:
        MalformedCredentialError: Missing or undecodable token
        AuthenticationError: Token outside the freshness window (TS_EXPIRED)
    """
    if not token:
        raise MalformedCredentialError("Missing TS token")

    generated_at = decode_freshness_token(token)
    if abs(now_ms - generated_at) > max_age_ms:
        raise AuthenticationError(error_code="TS_EXPIRED")
    return generated_at
