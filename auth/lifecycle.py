"""
auth/lifecycle.py -- Credential lifecycle engine: SignUp, Verify, SignIn, RefreshAccess.

State machine per account:

    Unregistered --sign_up--> Unverified --verify--> Verified
                               ^       |
                               +-------+  sign_up again (overwrite in place)

Verified is terminal: there is no de-verification and no change-password
path. A verified email can only be re-registered by an admin deleting the row.

The engine holds no mutable state of its own. Each call reads and writes the
AccountStore and returns plain values; the transport turns those into
cookies and headers. Errors are the AuthError kinds from auth/errors.py:
validation errors are raised before any I/O, store errors pass through
unchanged.

Non-enumeration: WrongEmail does not distinguish "never registered" from
"registered but unverified", WrongVerificationCode does not distinguish
"wrong" from "already used", and RefreshRejected does not distinguish
"expired" from "unknown". AccountAlreadyExists on sign-up does reveal that a
verified account exists for an email.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta

from email_validator import EmailNotValidError, validate_email

from auth.errors import InvalidCredentials, RefreshRejected, WrongEmail, WrongPassword, WrongVerificationCode
from auth.mailer import Mailer
from auth.models import Account, IssuedTokens, UpsertResult
from auth.store import AccountStore, utcnow
from auth.tokens import (
    create_access_token,
    generate_csrf_token,
    generate_refresh_token,
    generate_verification_code,
    hash_password,
    verify_password,
)
from core.config import get_settings

logger = logging.getLogger("userapi.lifecycle")

# bcrypt only reads the first 72 bytes of its input.
_MAX_PASSWORD_BYTES = 72


class CredentialLifecycle:
    """Orchestrates the hasher, minter, store, and mailer.

    Usage:
        engine = CredentialLifecycle(store, mailer)
        engine.sign_up("Alice1234", "alice@x.com", "Password1")
        tokens = engine.verify(code_from_email)
        tokens = engine.sign_in("alice@x.com", "Password1")
        tokens = engine.refresh_access(tokens.refresh_token)
    """

    def __init__(self, store: AccountStore, mailer: Mailer) -> None:
        self._store = store
        self._mailer = mailer
        # The singleton auth/tokens.py also reads.
        self._settings = get_settings()

    # ------------------------------------------------------------------
    # Input validation (pure -- no I/O)
    # ------------------------------------------------------------------

    def _normalize_email(self, email: str) -> str:
        try:
            return validate_email(email, check_deliverability=False).normalized
        except EmailNotValidError as exc:
            raise InvalidCredentials() from exc

    def _check_password_size(self, password: str) -> None:
        if not password or len(password.encode("utf-8")) > _MAX_PASSWORD_BYTES:
            raise InvalidCredentials()

    def validate_sign_up(self, display_name: str, email: str, password: str) -> str:
        """Check the sign-up shape and return the normalized email.

        Raises InvalidCredentials for a malformed email, a password shorter
        than min_password_length (or longer than 72 bytes), or a display name
        shorter than min_display_name_length.
        """
        normalized = self._normalize_email(email)
        self._check_password_size(password)
        if len(password) < self._settings.min_password_length:
            raise InvalidCredentials()
        if len(display_name) < self._settings.min_display_name_length:
            raise InvalidCredentials()
        return normalized

    def validate_sign_in(self, email: str, password: str) -> str:
        """Check the sign-in shape and return the normalized email.

        The minimum password length is a registration rule. A password too
        short to have been registered cannot match any stored hash, so it is
        reported as WrongPassword by sign_in rather than rejected here.
        This departs from applying the registration shape rules to sign-in too,
        which would turn the short wrong password "wrong" into InvalidCredentials.
        """
        normalized = self._normalize_email(email)
        self._check_password_size(password)
        return normalized

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def sign_up(self, display_name: str, email: str, password: str) -> UpsertResult:
        """Register (or re-register while unverified) and email a verification code.

        The account row is written before the mail is sent and is not rolled
        back if sending fails: the caller sees NotificationFailure and can
        simply sign up again, which overwrites the same row.
        """
        email = self.validate_sign_up(display_name, email, password)
        account = Account(
            id=str(uuid.uuid4()),
            display_name=display_name,
            email=email,
            password_hash=hash_password(password),
            registered_at=utcnow(),
            verification_code=generate_verification_code(),
            verified=False,
        )
        result = self._store.upsert_unverified_account(account)
        logger.info("Sign-up %s for pending account", result.value)
        self._mailer.send(account.email, account.verification_code, account.display_name)
        return result

    def verify(self, verification_code: str) -> IssuedTokens:
        """Consume a verification code and issue the account's first credentials."""
        refresh_token, expires_at = self._new_refresh_token()
        if self._store.conditionally_verify(verification_code, refresh_token, expires_at) == 0:
            raise WrongVerificationCode()
        account_id = self._store.find_id_by_valid_refresh_token(refresh_token)
        if account_id is None:
            raise RefreshRejected()
        logger.info("Account %s verified", account_id)
        return self._issue(account_id, refresh_token, expires_at)

    def sign_in(self, email: str, password: str) -> IssuedTokens:
        """Check a password and issue credentials, rotating the refresh token only if expired."""
        email = self.validate_sign_in(email, password)
        account = self._store.find_verified_by_email(email)
        if account is None:
            raise WrongEmail()
        if not verify_password(password, account.password_hash):
            raise WrongPassword()

        refresh_token = account.refresh_token
        expires_at = account.refresh_token_expires_at
        if refresh_token is None or expires_at is None or expires_at <= utcnow():
            refresh_token, expires_at = self._new_refresh_token()
            if not self._store.rotate_refresh_token(account.id, refresh_token, expires_at):
                raise RefreshRejected()
            logger.info("Refresh token rotated for account %s", account.id)
        return self._issue(account.id, refresh_token, expires_at)

    def refresh_access(self, refresh_token: str) -> IssuedTokens:
        """Mint a new access token from a valid refresh token. The refresh token is not rotated."""
        if not refresh_token:
            raise RefreshRejected()
        account_id = self._store.find_id_by_valid_refresh_token(refresh_token)
        if account_id is None:
            raise RefreshRejected()
        return self._issue(account_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _new_refresh_token(self) -> tuple[str, datetime]:
        expires_at = utcnow() + timedelta(days=self._settings.refresh_token_lifetime_days)
        return generate_refresh_token(), expires_at

    def _issue(
        self,
        account_id: str,
        refresh_token: str | None = None,
        refresh_token_expires_at: datetime | None = None,
    ) -> IssuedTokens:
        csrf_token = generate_csrf_token()
        return IssuedTokens(
            account_id=account_id,
            access_token=create_access_token(account_id, csrf_token),
            csrf_token=csrf_token,
            refresh_token=refresh_token,
            refresh_token_expires_at=refresh_token_expires_at,
        )
