"""
tests/test_lifecycle.py -- Unit tests for the credential lifecycle engine.

The engine runs against a real in-memory AccountStore and a FakeMailer, so
these tests check the actual SQL guards (single-use codes, unverified-only
overwrite, refresh expiry), not mocks of them.

Coverage:
  - sign_up: validation before I/O, idempotent re-registration, verified
    email conflict, notification failure keeps the row
  - verify: wrong code, single use, issued tokens
  - sign_in: wrong email (incl. unverified), wrong password, refresh reuse
    vs rotation on expiry
  - refresh_access: unknown / expired rejection, fresh anti-forgery values
  - concurrent sign-ups and verifies against a file-backed store
  - token lifetimes and hashing cost come from the shared settings
  - the end-to-end Alice scenario
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from jose import jwt

from auth.errors import (
    AccountAlreadyExists,
    InvalidCredentials,
    NotificationFailure,
    RefreshRejected,
    WrongEmail,
    WrongPassword,
    WrongVerificationCode,
)
from auth.lifecycle import CredentialLifecycle
from auth.models import UpsertResult
from auth.store import AccountStore, utcnow
from auth.tokens import verify_access_token, verify_password
from core.config import get_settings
from tests.conftest import FakeMailer, count_rows, fetch_row


def _register_and_verify(lifecycle, mailer, email="alice@x.com", password="Password1"):
    lifecycle.sign_up("Alice1234", email, password)
    return lifecycle.verify(mailer.last_code)


class TestSignUpValidation:
    @pytest.mark.parametrize(
        ("display_name", "email", "password"),
        [
            ("Alice1234", "alice.x.com", "Password1"),  # no @
            ("Alice1234", "alice@", "Password1"),
            ("Alice1234", "", "Password1"),
            ("Alice1234", "alice@x.com", "short"),  # password below minimum
            ("Alice", "alice@x.com", "Password1"),  # display name below minimum
            ("Alice1234", "alice@x.com", "p" * 73),  # beyond bcrypt's 72 bytes
        ],
    )
    def test_invalid_shape_never_touches_store(self, lifecycle, mailer, store, display_name, email, password) -> None:
        with pytest.raises(InvalidCredentials):
            lifecycle.sign_up(display_name, email, password)
        assert count_rows(store) == 0
        assert mailer.sent == []


class TestSignUp:
    def test_first_signup_inserts_and_mails_code(self, lifecycle, mailer, store) -> None:
        assert lifecycle.sign_up("Alice1234", "alice@x.com", "Password1") is UpsertResult.INSERTED
        row = fetch_row(store, "alice@x.com")
        assert not row.verified
        assert row.verification_code == mailer.last_code
        assert mailer.sent[-1].to_email == "alice@x.com"
        assert mailer.sent[-1].display_name == "Alice1234"
        assert verify_password("Password1", row.password_hash)

    def test_resignup_overwrites_same_row(self, lifecycle, mailer, store) -> None:
        lifecycle.sign_up("Alice1234", "alice@x.com", "Password1")
        first = fetch_row(store, "alice@x.com")

        assert lifecycle.sign_up("Alicia5678", "alice@x.com", "Different9") is UpsertResult.UPDATED

        second = fetch_row(store, "alice@x.com")
        assert count_rows(store) == 1
        assert second.id == first.id
        assert second.display_name == "Alicia5678"
        assert verify_password("Different9", second.password_hash)
        assert not verify_password("Password1", second.password_hash)
        assert second.verification_code == mailer.last_code
        assert second.verification_code != first.verification_code

    def test_signup_for_verified_email_conflicts(self, lifecycle, mailer, store) -> None:
        _register_and_verify(lifecycle, mailer)
        sent_before = len(mailer.sent)

        with pytest.raises(AccountAlreadyExists):
            lifecycle.sign_up("Mallory99", "alice@x.com", "Password2")

        assert len(mailer.sent) == sent_before
        assert fetch_row(store, "alice@x.com").display_name == "Alice1234"

    def test_notification_failure_keeps_row_and_retry_succeeds(self, store) -> None:
        failing = CredentialLifecycle(store, FakeMailer(fail=True))
        with pytest.raises(NotificationFailure):
            failing.sign_up("Alice1234", "alice@x.com", "Password1")
        assert count_rows(store) == 1

        mailer = FakeMailer()
        retry = CredentialLifecycle(store, mailer)
        assert retry.sign_up("Alice1234", "alice@x.com", "Password1") is UpsertResult.UPDATED
        assert retry.verify(mailer.last_code).refresh_token


class TestVerify:
    def test_wrong_code(self, lifecycle, mailer) -> None:
        lifecycle.sign_up("Alice1234", "alice@x.com", "Password1")
        with pytest.raises(WrongVerificationCode):
            lifecycle.verify("wrong-code-0000")

    def test_code_works_once(self, lifecycle, mailer) -> None:
        lifecycle.sign_up("Alice1234", "alice@x.com", "Password1")
        code = mailer.last_code
        lifecycle.verify(code)
        with pytest.raises(WrongVerificationCode):
            lifecycle.verify(code)

    def test_issues_refresh_and_access_tokens(self, lifecycle, mailer, store) -> None:
        tokens = _register_and_verify(lifecycle, mailer)
        row = fetch_row(store, "alice@x.com")

        assert tokens.account_id == row.id
        assert tokens.refresh_token == row.refresh_token
        assert len(tokens.refresh_token) == 512
        assert tokens.refresh_token_expires_at > utcnow() + timedelta(days=180)
        assert verify_access_token(tokens.access_token) == (row.id, tokens.csrf_token)
        assert row.verification_code is None


class TestSignIn:
    def test_unknown_email(self, lifecycle) -> None:
        with pytest.raises(WrongEmail):
            lifecycle.sign_in("nobody@x.com", "Password1")

    def test_unverified_email_looks_unknown(self, lifecycle) -> None:
        lifecycle.sign_up("Alice1234", "alice@x.com", "Password1")
        with pytest.raises(WrongEmail):
            lifecycle.sign_in("alice@x.com", "Password1")

    def test_wrong_password(self, lifecycle, mailer) -> None:
        _register_and_verify(lifecycle, mailer)
        with pytest.raises(WrongPassword):
            lifecycle.sign_in("alice@x.com", "Password2")

    def test_malformed_email(self, lifecycle) -> None:
        with pytest.raises(InvalidCredentials):
            lifecycle.sign_in("alice", "Password1")

    def test_reuses_unexpired_refresh_token(self, lifecycle, mailer) -> None:
        verified = _register_and_verify(lifecycle, mailer)
        signed_in = lifecycle.sign_in("alice@x.com", "Password1")
        assert signed_in.refresh_token == verified.refresh_token
        assert signed_in.refresh_token_expires_at == verified.refresh_token_expires_at
        assert signed_in.csrf_token != verified.csrf_token

    def test_rotates_expired_refresh_token(self, lifecycle, mailer, store) -> None:
        verified = _register_and_verify(lifecycle, mailer)
        store.rotate_refresh_token(verified.account_id, verified.refresh_token, utcnow() - timedelta(days=1))

        signed_in = lifecycle.sign_in("alice@x.com", "Password1")

        assert signed_in.refresh_token != verified.refresh_token
        assert signed_in.refresh_token_expires_at > utcnow()
        assert store.find_id_by_valid_refresh_token(signed_in.refresh_token) == verified.account_id
        assert store.find_id_by_valid_refresh_token(verified.refresh_token) is None

    def test_rotation_that_updates_nothing_is_rejected(self, lifecycle, mailer, store, monkeypatch) -> None:
        """A refresh token that never reached the store must not be handed out."""
        verified = _register_and_verify(lifecycle, mailer)
        store.rotate_refresh_token(verified.account_id, verified.refresh_token, utcnow() - timedelta(days=1))
        monkeypatch.setattr(store, "rotate_refresh_token", lambda *args: False)

        with pytest.raises(RefreshRejected):
            lifecycle.sign_in("alice@x.com", "Password1")

    def test_email_is_normalized(self, lifecycle, mailer) -> None:
        _register_and_verify(lifecycle, mailer, email="alice@X.COM")
        assert lifecycle.sign_in("alice@x.com", "Password1").account_id


class TestRefreshAccess:
    def test_unknown_token(self, lifecycle) -> None:
        with pytest.raises(RefreshRejected):
            lifecycle.refresh_access("unknown")

    def test_empty_token(self, lifecycle) -> None:
        with pytest.raises(RefreshRejected):
            lifecycle.refresh_access("")

    def test_expired_token(self, lifecycle, mailer, store) -> None:
        verified = _register_and_verify(lifecycle, mailer)
        store.rotate_refresh_token(verified.account_id, verified.refresh_token, utcnow() - timedelta(seconds=1))
        with pytest.raises(RefreshRejected):
            lifecycle.refresh_access(verified.refresh_token)

    def test_fresh_anti_forgery_each_call(self, lifecycle, mailer) -> None:
        verified = _register_and_verify(lifecycle, mailer)
        seen = {verified.csrf_token}
        for _ in range(5):
            tokens = lifecycle.refresh_access(verified.refresh_token)
            assert tokens.csrf_token not in seen
            seen.add(tokens.csrf_token)
            assert tokens.refresh_token is None
            assert verify_access_token(tokens.access_token) == (verified.account_id, tokens.csrf_token)


class TestConcurrency:
    """Sign-up and verify race on one file-backed database across threads."""

    @pytest.fixture
    def file_store(self, tmp_path):
        s = AccountStore(db_url=f"sqlite:///{tmp_path / 'race.db'}")
        yield s
        s.close()

    def test_parallel_signups_leave_one_row(self, file_store) -> None:
        engine = CredentialLifecycle(file_store, FakeMailer())

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(
                pool.map(lambda i: engine.sign_up(f"Alice{i:04d}", "alice@x.com", "Password1"), range(16))
            )

        assert count_rows(file_store) == 1
        assert results.count(UpsertResult.INSERTED) == 1
        assert results.count(UpsertResult.UPDATED) == 15

    def test_parallel_verifies_succeed_once(self, file_store) -> None:
        engine = CredentialLifecycle(file_store, FakeMailer())
        engine.sign_up("Alice1234", "alice@x.com", "Password1")
        code = fetch_row(file_store, "alice@x.com").verification_code

        def attempt(_):
            try:
                engine.verify(code)
            except WrongVerificationCode:
                return False
            return True

        with ThreadPoolExecutor(max_workers=8) as pool:
            outcomes = list(pool.map(attempt, range(8)))

        assert outcomes.count(True) == 1
        assert fetch_row(file_store, "alice@x.com").verified


class TestSettingsSource:
    def test_lifetimes_and_cost_follow_shared_settings(self, lifecycle, mailer, store) -> None:
        settings = get_settings()
        tokens = _register_and_verify(lifecycle, mailer)

        claims = jwt.get_unverified_claims(tokens.access_token)
        assert claims["exp"] - claims["iat"] == settings.access_token_expire_seconds

        expected = utcnow() + timedelta(days=settings.refresh_token_lifetime_days)
        assert abs(tokens.refresh_token_expires_at - expected) < timedelta(minutes=1)

        assert fetch_row(store, "alice@x.com").password_hash.startswith(f"$2b${settings.bcrypt_rounds:02d}$")


def test_alice_end_to_end(lifecycle, mailer) -> None:
    """SignUp -> wrong Verify -> Verify -> SignIn (same refresh) -> SignIn with wrong password."""
    assert lifecycle.sign_up("Alice1234", "alice@x.com", "Password1") is UpsertResult.INSERTED

    with pytest.raises(WrongVerificationCode):
        lifecycle.verify("wrongcode")

    verified = lifecycle.verify(mailer.last_code)
    assert verified.refresh_token and verified.access_token

    signed_in = lifecycle.sign_in("alice@x.com", "Password1")
    assert signed_in.refresh_token == verified.refresh_token

    with pytest.raises(WrongPassword):
        lifecycle.sign_in("alice@x.com", "wrong")
