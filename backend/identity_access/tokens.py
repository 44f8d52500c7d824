"""
JWT verification helpers for the identity_access bounded context.

Why: The login service issues HS256 access tokens carrying the user record
(`id`, `email`, `role`, `username`). Chat connections and chat REST calls can
present such a token instead of a self-declared identity. Keeping the
cryptographic check here lets us unit test it without the web adapter.

Security: Only HS256 is accepted, expiry is enforced with a small clock skew,
and tokens are never logged.
"""
from __future__ import annotations

from typing import Dict, Optional
import os
import time

from jose import jwt
from jose.exceptions import JOSEError

from .directory import humanize_identifier
from .domain import Identity, normalize_role, normalize_user_id

DEFAULT_DEV_SECRET = "your_jwt_secret"
MAX_CLOCK_SKEW_SECONDS = 5  # Allow minimal skew between servers


class TokenVerificationError(Exception):
    """Raised when an access token fails verification."""

    def __init__(self, code: str):
        super().__init__(code)
        self.code = code


def jwt_secret() -> str:
    return (os.getenv("JWT_SECRET") or DEFAULT_DEV_SECRET).strip()


def verify_access_token(token: str, *, secret: Optional[str] = None) -> Dict[str, object]:
    """Validate an HS256 access token and return its claims.

    Raises
    ------
    TokenVerificationError:
        `missing_token` for empty input, `invalid_token` for signature/format
        problems, `expired_token` when `exp` lies in the past.
    """
    if not token or not isinstance(token, str):
        raise TokenVerificationError("missing_token")
    try:
        claims = jwt.decode(
            token,
            secret or jwt_secret(),
            algorithms=["HS256"],
            options={"verify_exp": False, "verify_aud": False},
        )
    except JOSEError as exc:
        raise TokenVerificationError("invalid_token") from exc

    exp = claims.get("exp")
    if isinstance(exp, (int, float)) and exp + MAX_CLOCK_SKEW_SECONDS < time.time():
        raise TokenVerificationError("expired_token")
    return claims


def identity_from_token(token: str, *, secret: Optional[str] = None) -> Identity:
    """Resolve a verified token into an Identity.

    Behavior:
        - `id` and a known `role` claim are required (`invalid_claims` otherwise).
        - Display name falls back from `username` to the email local part.
    """
    claims = verify_access_token(token, secret=secret)
    user_id = normalize_user_id(claims.get("id"))
    role = normalize_role(claims.get("role"))
    if not user_id or role is None:
        raise TokenVerificationError("invalid_claims")
    email = str(claims.get("email") or "")
    name = str(claims.get("username") or "").strip()
    if not name:
        name = humanize_identifier(email) or user_id
    return Identity(id=user_id, name=name, role=role, email=email)


def bearer_token(header_value: Optional[str]) -> str:
    """Extract the token from an `Authorization: Bearer <jwt>` header value."""
    if not header_value:
        return ""
    parts = header_value.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return ""
    return parts[1].strip()
