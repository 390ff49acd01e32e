"""
auth/models.py -- Domain dataclasses for credential entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own the
domain shape; the store and the lifecycle engine do the work.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


@dataclass
class Account:
    """One registered identity, keyed by email.

    verification_code is set while the account is unverified and cleared
    (None) once Verify succeeds. refresh_token / refresh_token_expires_at are
    only meaningful for verified accounts.

    All datetimes are naive UTC.
    """

    display_name: str
    email: str
    password_hash: str
    id: str | None = None
    registered_at: datetime | None = None
    verification_code: str | None = None
    verified: bool = False
    refresh_token: str | None = None
    refresh_token_expires_at: datetime | None = None


class UpsertResult(str, Enum):
    """Outcome of a sign-up write: a new row, or an unverified row overwritten in place."""

    INSERTED = "inserted"
    UPDATED = "updated"


@dataclass(frozen=True)
class IssuedTokens:
    """Credentials handed back to the transport after a successful operation.

    refresh_token and refresh_token_expires_at are None for RefreshAccess,
    which never rotates the refresh token.
    """

    account_id: str
    access_token: str
    csrf_token: str
    refresh_token: str | None = None
    refresh_token_expires_at: datetime | None = None
