"""
api/routes/v1/auth.py -- Authentication and session REST endpoints.

Routes:
  POST /api/v1/auth/register             -- create a local account; 201
  POST /api/v1/auth/login                -- password login; returns a token pair
  POST /api/v1/auth/refresh              -- rotate a refresh token; returns a new pair
  POST /api/v1/auth/logout               -- revoke one refresh token; 204
  POST /api/v1/auth/logout-all           -- revoke every refresh token of the caller; 204
  POST /api/v1/auth/forgot-password      -- email a reset link (always 200)
  POST /api/v1/auth/reset-password       -- consume a reset token
  POST /api/v1/auth/verify-email         -- consume a verification token
  POST /api/v1/auth/resend-verification  -- email a new verification link (always 200)
  GET  /api/v1/auth/me                   -- identity from the access token (no store lookup)
  GET  /api/v1/auth/google               -- redirect to Google
  GET  /api/v1/auth/google/callback      -- finish Google login; redirect to the frontend

Security:
  [H2] POST /login is rate-limited per IP (LOGIN_RATE_LIMIT) in front of the
       per-email lockout in CredentialService.
  [M5] Cache-Control: no-store on every response that carries tokens.
  forgot-password and resend-verification answer the same way whether or
  not the email exists.

Core failures are raised as AuthError and rendered by the handler in
api/main.py; routes do not build error responses themselves.
"""

from __future__ import annotations

import logging
from urllib.parse import urlencode

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

from api.limiter import limiter
from api.models import (
    ClaimsResponse,
    ForgotPasswordRequest,
    LoginRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    ResendVerificationRequest,
    ResetPasswordRequest,
    TokenResponse,
    UserResponse,
    VerifyEmailRequest,
)
from auth.dependencies import get_current_claims
from auth.errors import AuthError, ErrorKind
from auth.models import PROVIDER_GOOGLE, AccessClaims, TokenPair
from auth.oauth import get_google_user_info
from core.config import get_settings
from core.validation import PasswordPolicy

logger = logging.getLogger("idcore.api")

# Auth policy:
# - register, login, refresh, logout, forgot/reset-password, verify-email,
#   resend-verification, google, google/callback: public
# - me, logout-all: require a valid access token (get_current_claims)
router = APIRouter()

_GENERIC_EMAIL_SENT = "If the account exists, an email has been sent."


def _login_rate_limit() -> str:
    return get_settings().login_rate_limit


def check_password_policy(request: Request, password: str) -> None:
    """Raise AuthError(VALIDATION) if password fails the configured policy."""
    policy: PasswordPolicy = request.app.state.password_policy
    problems = policy.problems(password)
    if problems:
        raise AuthError(ErrorKind.VALIDATION, "weak_password", "Password " + ", ".join(problems) + ".")


def _token_response(pair: TokenPair) -> JSONResponse:
    resp = JSONResponse(content=TokenResponse.from_pair(pair).model_dump(mode="json"))
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Registration and sessions
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=UserResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> UserResponse:
    """Create a local account and send the first verification email in the background."""
    check_password_policy(request, body.password)
    user = request.app.state.credentials.register(body.email, body.password, body.name)
    # The account exists either way; a failed verification send is logged, not returned.
    request.app.state.dispatcher.submit(request.app.state.verification.send_verification, user.id, user.email)
    return UserResponse.from_user(user)


@limiter.limit(_login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=TokenResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password and open a session.

    Unknown email, OAuth-only account and wrong password all return the same
    invalid_credentials error.
    """
    pair = request.app.state.sessions.login(body.email, body.password)
    return _token_response(pair)


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a new pair. The presented token stops working."""
    pair = request.app.state.sessions.rotate(body.refresh_token)
    return _token_response(pair)


@router.post("/auth/logout", status_code=204)
def logout(request: Request, body: RefreshRequest) -> Response:
    """Revoke one refresh token. Unknown or already revoked tokens are not an error."""
    request.app.state.sessions.revoke_refresh_token(body.refresh_token)
    return Response(status_code=204)


@router.post("/auth/logout-all", status_code=204)
def logout_all(request: Request, claims: AccessClaims = Depends(get_current_claims)) -> Response:
    """Revoke every refresh token the caller holds (log out on all devices)."""
    request.app.state.sessions.revoke_all_for_user(claims.user_id)
    return Response(status_code=204)


@router.get("/auth/me", response_model=ClaimsResponse)
def me(claims: AccessClaims = Depends(get_current_claims)) -> ClaimsResponse:
    """Return the identity carried by the access token."""
    return ClaimsResponse(
        user_id=claims.user_id,
        email=claims.email,
        role=claims.role,
        expires_at=claims.expires_at,
    )


# ---------------------------------------------------------------------------
# Password reset and email verification
# ---------------------------------------------------------------------------


@router.post("/auth/forgot-password", response_model=MessageResponse)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> MessageResponse:
    request.app.state.recovery.request_reset(body.email)
    return MessageResponse(message=_GENERIC_EMAIL_SENT)


@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    """Set a new password from a reset token. Every existing session is revoked."""
    check_password_policy(request, body.new_password)
    request.app.state.recovery.consume_reset(body.token, body.new_password)
    return MessageResponse(message="Password has been reset.")


@router.post("/auth/verify-email", response_model=MessageResponse)
def verify_email(request: Request, body: VerifyEmailRequest) -> MessageResponse:
    request.app.state.verification.verify(body.token)
    return MessageResponse(message="Email verified.")


@router.post("/auth/resend-verification", response_model=MessageResponse)
def resend_verification(request: Request, body: ResendVerificationRequest) -> MessageResponse:
    request.app.state.verification.resend_verification(body.email)
    return MessageResponse(message=_GENERIC_EMAIL_SENT)


# ---------------------------------------------------------------------------
# Google OAuth
# ---------------------------------------------------------------------------


def _oauth_failure_redirect(request: Request) -> RedirectResponse:
    target = request.app.state.settings.oauth_frontend_url
    return RedirectResponse(f"{target}?{urlencode({'error': 'oauth_failed'})}", status_code=302)


@router.get("/auth/google")
async def google_login(request: Request) -> RedirectResponse:
    """Start the Google authorization code flow."""
    client = request.app.state.oauth.create_client(PROVIDER_GOOGLE)
    if client is None:
        raise AuthError.not_found("Google login is not configured.")
    redirect_uri = str(request.url_for("google_callback"))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/auth/google/callback", name="google_callback")
async def google_callback(request: Request) -> RedirectResponse:
    """Finish Google login and hand the token pair to the frontend.

    Flow:
      1. Exchange authorization code for token (authlib checks CSRF state via the session).
      2. Extract (sub, email, name) -- raises ValueError if the email is unverified [H1].
      3. Find, link or create the local account (FederatedIdentityLinker).
      4. Issue a token pair and redirect to OAUTH_FRONTEND_URL with the tokens
         in the URL fragment, which browsers never send to a server.
    """
    client = request.app.state.oauth.create_client(PROVIDER_GOOGLE)
    if client is None:
        raise AuthError.not_found("Google login is not configured.")

    try:
        token = await client.authorize_access_token(request)
    except OAuthError:
        logger.exception("Google token exchange failed")
        return _oauth_failure_redirect(request)

    try:
        external_id, email, name = get_google_user_info(token)
    except ValueError:
        logger.warning("Google login rejected: unverified or missing email")
        return _oauth_failure_redirect(request)

    user = await run_in_threadpool(request.app.state.linker.find_or_link_or_create, external_id, email, name)
    pair = await run_in_threadpool(request.app.state.sessions.issue_pair, user)

    fragment = urlencode(
        {"access_token": pair.access_token, "refresh_token": pair.refresh_token, "expires_in": pair.expires_in}
    )
    resp = RedirectResponse(f"{request.app.state.settings.oauth_frontend_url}#{fragment}", status_code=302)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp
