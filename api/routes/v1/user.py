"""
api/routes/v1/user.py -- Registration, verification, sign-in, and token endpoints.

Routes:
  POST /api/v1/user                  -- sign up; emails a verification code
  POST /api/v1/user/verify/{code}    -- verify; sets refresh + access cookies
  POST /api/v1/user/auth             -- sign in; sets refresh + access cookies
  GET  /api/v1/user/token            -- new access token from the refresh cookie
  GET  /api/v1/user/logout           -- clears both cookies; always 200
  GET  /api/v1/user/me               -- current account (requires access token)

Every handler is a thin adapter: decode the body, call one CredentialLifecycle
method, write cookies and the X-CSRF-Token header. AuthError kinds raised by
the engine propagate to the exception handlers in api/main.py, which own the
error -> status mapping.

Handlers are sync `def` on purpose: bcrypt, SQLAlchemy and requests all
block, so FastAPI runs them in its worker thread pool.

Security:
  Cache-Control: no-store on every response that carries a token.
  The anti-forgery value goes out as a response header only -- never in a
  cookie -- so a cross-site request cannot replay it.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.models import Envelope, MeResponse, SignInRequest, SignUpRequest
from auth.dependencies import get_current_account
from auth.lifecycle import CredentialLifecycle
from auth.models import Account, IssuedTokens
from auth.tokens import (
    CSRF_HEADER,
    REFRESH_COOKIE,
    clear_auth_cookies,
    set_access_cookie,
    set_refresh_cookie,
)

# Auth policy:
# - POST /api/v1/user, /user/verify/{code}, /user/auth: public
# - GET  /api/v1/user/token: refresh cookie required
# - GET  /api/v1/user/logout: public -- clearing cookies needs no prior auth
# - GET  /api/v1/user/me: access token required (get_current_account)
router = APIRouter()


def _ok(message: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=200,
        content=Envelope(result="ok", message=message, code=200).model_dump(exclude_none=True),
    )


def _token_response(tokens: IssuedTokens) -> JSONResponse:
    resp = _ok()
    if tokens.refresh_token is not None and tokens.refresh_token_expires_at is not None:
        set_refresh_cookie(resp, tokens.refresh_token, tokens.refresh_token_expires_at)
    set_access_cookie(resp, tokens.access_token)
    resp.headers[CSRF_HEADER] = tokens.csrf_token
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _lifecycle(request: Request) -> CredentialLifecycle:
    return request.app.state.lifecycle


@router.post("/user")
def sign_up(request: Request, body: SignUpRequest) -> JSONResponse:
    """Register an account and email a verification code. No tokens are issued."""
    _lifecycle(request).sign_up(body.user_name, body.email, body.password)
    return _ok("email was sent")


@router.post("/user/verify/{code}")
def verify(request: Request, code: str) -> JSONResponse:
    """Consume the emailed verification code; issue refresh and access tokens."""
    tokens = _lifecycle(request).verify(code)
    return _token_response(tokens)


@router.post("/user/auth")
def sign_in(request: Request, body: SignInRequest) -> JSONResponse:
    """Sign in with email and password; issue refresh and access tokens."""
    tokens = _lifecycle(request).sign_in(body.email, body.password)
    return _token_response(tokens)


@router.get("/user/token")
def refresh_access(request: Request) -> JSONResponse:
    """Exchange the refresh cookie for a new access token and anti-forgery value."""
    refresh_token = request.cookies.get(REFRESH_COOKIE)
    if not refresh_token:
        raise HTTPException(status_code=400, detail="cookie not present")
    tokens = _lifecycle(request).refresh_access(refresh_token)
    return _token_response(tokens)


@router.get("/user/logout")
def logout() -> JSONResponse:
    """Clear both auth cookies. Touches no stored state and always succeeds."""
    resp = _ok()
    clear_auth_cookies(resp)
    return resp


@router.get("/user/me", response_model=MeResponse)
def me(account: Account = Depends(get_current_account)) -> MeResponse:
    """Return identity information for the account behind the access token."""
    return MeResponse(id=account.id, user_name=account.display_name, email=account.email)
