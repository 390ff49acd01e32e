"""
auth/errors.py -- Closed set of error kinds raised by the credential core.

Every failure the lifecycle engine, hasher, minter, store, or mailer can
report is one of the AuthError subclasses below. Each class carries the
message the client is allowed to see. The HTTP status for each kind lives in
one table in api/main.py, not here -- auth/ knows nothing about HTTP.

Sensitive kinds (HashingFailure, Unexpected) keep their client message
generic. The underlying cause is chained with `raise ... from exc` so the
transport can log it without ever sending it to the client.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for all credential lifecycle errors."""

    message: str = "unexpected error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)

    @property
    def client_message(self) -> str:
        return str(self)


# Input shape -- raised before any I/O, never wrapped.
class InvalidCredentials(AuthError):
    message = "invalid credentials"


class AccountAlreadyExists(AuthError):
    message = "user already exists"


class WrongVerificationCode(AuthError):
    message = "wrong verification code"


class WrongEmail(AuthError):
    message = "wrong email"


class WrongPassword(AuthError):
    message = "wrong password"


class RefreshRejected(AuthError):
    message = "refresh token rejected"


class TokenInvalid(AuthError):
    message = "invalid access token"


class TokenExpired(AuthError):
    message = "access token expired"


class NotificationFailure(AuthError):
    message = "failed to send verification email"


class StoreUnavailable(AuthError):
    """The store could not hand out a connection in time. Clients should retry."""

    message = "too many requests"


class HashingFailure(AuthError):
    """bcrypt could not hash or check a password. Detail is server-side only."""

    @property
    def client_message(self) -> str:
        return AuthError.message


class Unexpected(AuthError):
    """Catch-all for unclassified store/library failures. Detail is server-side only."""

    @property
    def client_message(self) -> str:
        return AuthError.message
