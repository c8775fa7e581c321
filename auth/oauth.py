"""
auth/oauth.py -- Authlib OAuth/OIDC client configuration (Google).

build_oauth() registers the Google client only when both client ID and
secret are configured. The composition root stores the registry on
app.state.oauth; routes check is_google_enabled() before using it.

Security notes:
  [H1] Email verification is mandatory. get_google_user_info() raises
       ValueError if Google does not confirm the email is verified. The
       linker trusts the returned email enough to attach the identity to an
       existing local account, so an unverified address must never reach it.

  OAuth state parameter (CSRF protection) is handled by authlib automatically
  via Starlette SessionMiddleware. The session stores the state between the
  authorization redirect and the callback.

Layer rule: no imports from api/, cache/, or notify/. Import from core/
is allowed -- core/ is the kernel layer.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuth

from core.config import Settings

logger = logging.getLogger("idcore.auth.oauth")

_GOOGLE_DISCOVERY_URL = "https://accounts.google.com/.well-known/openid-configuration"


def is_google_enabled(settings: Settings) -> bool:
    return bool(settings.google_client_id and settings.google_client_secret)


def build_oauth(settings: Settings) -> OAuth:
    """Return an authlib registry with every configured provider registered."""
    oauth = OAuth()
    if is_google_enabled(settings):
        oauth.register(
            name="google",
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            server_metadata_url=_GOOGLE_DISCOVERY_URL,
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Google OAuth provider registered")
    return oauth


def get_google_user_info(token: dict) -> tuple[str, str, str]:
    """Extract (external_id, email, name) from a Google token response.

    Google returns an id_token whose parsed claims authlib places under
    token["userinfo"].

    [H1] The email claim is only accepted when email_verified is True. A
    missing email_verified claim is treated as unverified.

    Raises:
        ValueError: If the userinfo is missing, incomplete, or unverified.
    """
    userinfo = token.get("userinfo")
    if not userinfo:
        raise ValueError("google OAuth: no userinfo in token response")

    if not userinfo.get("email_verified", False):
        raise ValueError(
            "google OAuth: email is not verified. "
            "The provider must confirm email ownership before login is allowed."
        )

    email = userinfo.get("email")
    subject_id = userinfo.get("sub")
    if not email or not subject_id:
        raise ValueError("google OAuth: missing email or sub claim in userinfo")

    name = userinfo.get("name") or email.split("@", 1)[0]
    return subject_id, email, name
