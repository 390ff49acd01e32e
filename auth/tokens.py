"""
auth/tokens.py -- Password hashing, access-token JWTs, random credentials, and cookies.

Security design decisions:
  JWT: python-jose with HS256. Access tokens are signed with SECRET_KEY and
       carry the account id (sub), the anti-forgery value (csrf), and a short
       expiry (5 minutes by default). Verification raises TokenExpired or
       TokenInvalid -- the route layer maps both to 401.

  Passwords: bcrypt used directly (no passlib wrapper). The cost factor comes
       from Settings.bcrypt_rounds so tests can run at the minimum cost while
       production keeps the adaptive cost high.

  Random credentials: secrets.token_urlsafe. Verification codes are 16 chars,
       anti-forgery values 32 chars, refresh tokens 512 chars. Refresh tokens
       are compared by exact match in the store, so their length is the only
       thing standing between an attacker and a valid session.

  SECRET_KEY: sourced from core.config.get_settings(), which refuses short or
       missing keys in production.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import HashingFailure, TokenExpired, TokenInvalid
from core.config import get_settings

logger = logging.getLogger("userapi.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

ACCESS_COOKIE = "Access-token"
REFRESH_COOKIE = "Refresh-token"
CSRF_HEADER = "X-CSRF-Token"

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    A fresh salt is generated on every call, so hashing the same password
    twice yields two different strings. Callers must keep inputs at or below
    72 bytes; the lifecycle engine validates that before hashing.
    """
    try:
        hashed = bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=_settings.bcrypt_rounds))
    except ValueError as exc:
        raise HashingFailure(f"bcrypt hashing failed: {exc}") from exc
    return hashed.decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A mismatch is False, not an error. A stored hash bcrypt cannot parse
    raises HashingFailure.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError as exc:
        raise HashingFailure(f"malformed password hash: {exc}") from exc


# ---------------------------------------------------------------------------
# Random credentials
# ---------------------------------------------------------------------------


def generate_verification_code() -> str:
    """16 URL-safe characters (96 bits), sent to the user by email."""
    return secrets.token_urlsafe(12)


def generate_refresh_token() -> str:
    """512 URL-safe characters."""
    return secrets.token_urlsafe(384)


def generate_csrf_token() -> str:
    """32 URL-safe characters, echoed back by the client in X-CSRF-Token."""
    return secrets.token_urlsafe(24)


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(
    account_id: str,
    csrf_token: str,
    expire_seconds: int = 0,
    now: datetime | None = None,
) -> str:
    """Encode a signed JWT bound to an account and an anti-forgery value.

    Args:
        account_id:     Account id, stored as the JWT subject claim.
        csrf_token:     Anti-forgery value the client must echo back.
        expire_seconds: Token lifetime. If 0 (default), uses
                        Settings.access_token_expire_seconds.
        now:            Issue time (aware UTC). Defaults to the current time.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.access_token_expire_seconds
    issued = now or datetime.now(timezone.utc)
    payload = {
        "sub": account_id,
        "csrf": csrf_token,
        "iat": issued,
        "exp": issued + timedelta(seconds=duration),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def verify_access_token(token: str) -> tuple[str, str]:
    """Verify a JWT and return (account_id, csrf_token).

    Raises TokenExpired once the exp claim has passed and TokenInvalid for
    any other failure (bad signature, garbage input, missing claims).
    """
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except ExpiredSignatureError as exc:
        raise TokenExpired() from exc
    except JWTError as exc:
        raise TokenInvalid() from exc
    account_id = payload.get("sub")
    csrf_token = payload.get("csrf")
    if not account_id or not csrf_token:
        raise TokenInvalid()
    return account_id, csrf_token


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_access_cookie(response, token: str) -> None:
    """Write the JWT access token as a short-lived httpOnly cookie.

    samesite="strict": never sent on cross-site requests.
    max_age matches the JWT expiry so both expire together.
    """
    response.set_cookie(
        ACCESS_COOKIE,
        value=token,
        max_age=_settings.access_token_expire_seconds,
        httponly=True,
        samesite="strict",
        secure=_settings.secure_cookies,
        path="/",
    )


def set_refresh_cookie(response, token: str, expires_at: datetime) -> None:
    """Write the refresh token as an httpOnly cookie with an absolute expiry.

    expires_at is naive UTC (as stored); Starlette needs an aware datetime to
    format the Expires attribute.
    """
    response.set_cookie(
        REFRESH_COOKIE,
        value=token,
        expires=expires_at.replace(tzinfo=timezone.utc),
        httponly=True,
        samesite="strict",
        secure=_settings.secure_cookies,
        path="/",
    )


def clear_auth_cookies(response) -> None:
    for name in (REFRESH_COOKIE, ACCESS_COOKIE):
        response.delete_cookie(
            name,
            httponly=True,
            samesite="strict",
            secure=_settings.secure_cookies,
            path="/",
        )
