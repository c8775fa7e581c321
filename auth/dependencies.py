"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Requests authenticate with an access token in the
"Authorization: Bearer <token>" header. The token is checked by signature,
issuer, audience and expiry only (SessionTokenService.parse_access_token);
no store lookup is needed to know who is calling.

get_current_claims() raises AuthError(UNAUTHORIZED) when the header is
missing or the token is rejected. get_current_user() additionally loads the
account, so a soft-deleted user is refused even while their access token
is still within its lifetime. require_admin() raises AuthError(FORBIDDEN)
for non-admin roles.

All failures are AuthError; the handler in api/main.py turns them into the
standard error envelope.

Layer rule: no imports from cache/ or notify/.
  auth/dependencies.py may import from fastapi (for Request) because this
  module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, Request

from auth.errors import AuthError, ErrorKind
from auth.models import ROLE_ADMIN, AccessClaims, User


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_current_claims(request: Request) -> AccessClaims:
    """Require a valid access token and return its claims.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(claims: AccessClaims = Depends(get_current_claims)): ...
    """
    token = _bearer_token(request)
    if token is None:
        raise AuthError(ErrorKind.UNAUTHORIZED, "unauthorized", "Authentication required.")
    return request.app.state.sessions.parse_access_token(token)


def get_current_user(request: Request, claims: AccessClaims = Depends(get_current_claims)) -> User:
    """Require a valid access token for an account that still exists."""
    try:
        return request.app.state.credentials.get_user(claims.user_id)
    except AuthError as exc:
        if exc.kind is ErrorKind.NOT_FOUND:
            raise AuthError(ErrorKind.UNAUTHORIZED, "unauthorized", "Authentication required.") from exc
        raise


def require_admin(claims: AccessClaims = Depends(get_current_claims)) -> AccessClaims:
    """Require the admin role. Raises 401 if unauthenticated, 403 if not admin."""
    if claims.role != ROLE_ADMIN:
        raise AuthError(ErrorKind.FORBIDDEN, "forbidden", "Admin access required.")
    return claims
