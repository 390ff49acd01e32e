"""
auth/dependencies.py -- FastAPI Depends() helpers for access-token authentication.

Two token sources are checked in priority order:
  1. "Access-token" cookie -- set by the sign-in / verify / refresh flows.
  2. Authorization: Bearer <token> header -- API clients holding the JWT.

State-changing requests (anything but GET/HEAD/OPTIONS) must also echo the
anti-forgery value in the X-CSRF-Token header. It has to equal the csrf claim
inside the token; a cookie alone is not enough.
Today the only protected route is GET /api/v1/user/me, so the echo check is
not reached in production yet. It guards any state-changing route that
later depends on get_current_account.

get_current_account() raises the AuthError kinds (TokenInvalid, TokenExpired);
the exception handlers in api/main.py turn them into 401 responses.

Layer rule: auth/dependencies.py may import from fastapi because it is part
of the FastAPI dependency injection system.
"""

from __future__ import annotations

import hmac

from fastapi import Request

from auth.errors import TokenInvalid
from auth.models import Account
from auth.store import AccountStore
from auth.tokens import ACCESS_COOKIE, CSRF_HEADER, verify_access_token

_SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


def _extract_token(request: Request) -> str | None:
    token = request.cookies.get(ACCESS_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    return token or None


def get_current_account(request: Request) -> Account:
    """Require a valid access token (and, for unsafe methods, the CSRF echo).

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(account: Account = Depends(get_current_account)): ...
    """
    token = _extract_token(request)
    if token is None:
        raise TokenInvalid()
    account_id, csrf_token = verify_access_token(token)

    if request.method not in _SAFE_METHODS:
        echoed = request.headers.get(CSRF_HEADER, "")
        if not hmac.compare_digest(echoed.encode(), csrf_token.encode()):
            raise TokenInvalid()

    store: AccountStore = request.app.state.account_store
    account = store.get_by_id(account_id)
    if account is None or not account.verified:
        raise TokenInvalid()
    return account
