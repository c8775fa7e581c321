"""
auth/verification.py -- Email address verification by emailed one-time token.

Same shape as auth/recovery.py with three differences: tokens live 24
hours, a successful verify() marks email_verified_at instead of changing
the password, and sessions are left alone.

resend_verification() returns quietly for unknown and already-verified
addresses, so the caller sees neither an enumeration signal nor a
"please wait" for something that is already done.

Layer rule: no imports from api/. notify/ is used only through the injected
sender.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from auth.errors import AuthError, ErrorKind, collaborator_errors
from auth.store import AuthStore
from auth.tokens import generate_opaque_token
from cache.store import Cache, CacheError
from core.background import BackgroundDispatcher
from notify.email import Message, Sender

logger = logging.getLogger("idcore.auth")

VERIFICATION_RATE_LIMIT_PREFIX = "email_verification:"
VERIFICATION_RATE_LIMIT_SECONDS = 60
VERIFICATION_TOKEN_LIFETIME = timedelta(hours=24)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _invalid_token() -> AuthError:
    return AuthError(ErrorKind.BAD_REQUEST, "invalid_or_expired_token", "invalid or expired verification token")


class EmailVerificationService:
    def __init__(
        self,
        store: AuthStore,
        cache: Cache,
        sender: Sender,
        dispatcher: BackgroundDispatcher,
        *,
        frontend_url: str,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._cache = cache
        self._sender = sender
        self._dispatcher = dispatcher
        self._frontend_url = frontend_url.rstrip("/")
        self._clock = clock

    def send_verification(self, user_id: int, email: str) -> None:
        """Replace the user's verification tokens with a fresh one and email the link."""
        token = generate_opaque_token()
        with collaborator_errors("failed to create verification token"):
            with self._store.transaction() as uow:
                uow.email_verifications.delete_by_user_id(user_id)
                uow.email_verifications.create(user_id, token, self._clock() + VERIFICATION_TOKEN_LIFETIME)

        link = f"{self._frontend_url}/verify-email?token={token}"
        message = Message(
            to=email,
            subject="Verify Your Email Address",
            html=f'<p>Click <a href="{link}">here</a> to verify your email address. This link expires in 24 hours.</p>',
            body=f"Verify your email address: {link}\nThis link expires in 24 hours.",
        )
        self._dispatcher.submit(self._sender.send, message)

    def verify(self, token: str) -> None:
        with collaborator_errors("failed to verify token"):
            with self._store.transaction() as uow:
                record = uow.email_verifications.get(token)
        if record is None:
            raise _invalid_token()
        if record.expires_at <= self._clock():
            with collaborator_errors("failed to delete expired verification token"):
                with self._store.transaction() as uow:
                    uow.email_verifications.delete(token)
            raise AuthError(ErrorKind.BAD_REQUEST, "token_expired", "verification token has expired")

        with collaborator_errors("failed to verify email"):
            with self._store.transaction() as uow:
                if not uow.users.mark_email_verified(record.user_id):
                    raise _invalid_token()
                if uow.email_verifications.delete(token) != 1:
                    raise _invalid_token()
        logger.info("Email verified for user id=%s", record.user_id)

    def resend_verification(self, email: str) -> None:
        key = VERIFICATION_RATE_LIMIT_PREFIX + email
        with collaborator_errors("failed to check verification rate limit"):
            limited = self._cache.exists(key)
        if limited:
            raise AuthError(
                ErrorKind.RATE_LIMITED,
                "verification_rate_limited",
                "please wait before requesting another verification email",
            )

        with collaborator_errors("failed to process request"):
            with self._store.transaction() as uow:
                user = uow.users.get_by_email(email)
        if user is None or user.email_verified:
            return

        try:
            self._cache.set(key, b"1", ttl=VERIFICATION_RATE_LIMIT_SECONDS)
        except CacheError:
            logger.warning("Could not set verification rate-limit key", exc_info=True)
        self.send_verification(user.id, user.email)
