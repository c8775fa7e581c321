"""
auth/recovery.py -- Password reset by emailed one-time token.

Flow:
  request_reset(email)
    1. password_reset:<email> present in the cache -> reset_rate_limited,
       before any store access (one request per email per minute).
    2. Unknown email -> return quietly. The caller cannot tell whether the
       account exists.
    3. In one unit of work: drop the user's earlier reset tokens and create
       a fresh one valid for one hour.
    4. Set the rate-limit key, then hand the email to the background
       dispatcher. A delivery failure is logged there and never reaches the
       caller; the user can ask again after the cool-down.

  consume_reset(token, new_password)
    Unknown token -> invalid_or_expired_token. Expired -> the token is
    deleted and token_expired is raised. Otherwise, in one unit of work:
    set the new password hash, delete the token, and revoke every refresh
    token the user holds. If the token delete removes nothing, a concurrent
    consumer won; the unit of work is rolled back.

Reset tokens are stored in cleartext: they are single use, short lived and
deleted on first use.

Layer rule: no imports from api/. notify/ is used only through the injected
sender.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from auth.errors import AuthError, ErrorKind, collaborator_errors
from auth.store import AuthStore
from auth.tokens import generate_opaque_token, hash_password
from cache.store import Cache, CacheError
from core.background import BackgroundDispatcher
from notify.email import Message, Sender

logger = logging.getLogger("idcore.auth")

RESET_RATE_LIMIT_PREFIX = "password_reset:"
RESET_RATE_LIMIT_SECONDS = 60
RESET_TOKEN_LIFETIME = timedelta(hours=1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _invalid_token() -> AuthError:
    return AuthError(ErrorKind.BAD_REQUEST, "invalid_or_expired_token", "invalid or expired reset token")


class PasswordResetService:
    def __init__(
        self,
        store: AuthStore,
        cache: Cache,
        sender: Sender,
        dispatcher: BackgroundDispatcher,
        *,
        frontend_url: str,
        bcrypt_rounds: int = 12,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._cache = cache
        self._sender = sender
        self._dispatcher = dispatcher
        self._frontend_url = frontend_url.rstrip("/")
        self._rounds = bcrypt_rounds
        self._clock = clock

    def request_reset(self, email: str) -> None:
        key = RESET_RATE_LIMIT_PREFIX + email
        with collaborator_errors("failed to check reset rate limit"):
            limited = self._cache.exists(key)
        if limited:
            raise AuthError(
                ErrorKind.RATE_LIMITED,
                "reset_rate_limited",
                "a reset email was sent recently, please wait before retrying",
            )

        token = generate_opaque_token()
        with collaborator_errors("failed to create reset token"):
            with self._store.transaction() as uow:
                user = uow.users.get_by_email(email)
                if user is None:
                    return
                uow.password_resets.delete_by_user_id(user.id)
                uow.password_resets.create(user.id, token, self._clock() + RESET_TOKEN_LIFETIME)

        try:
            self._cache.set(key, b"1", ttl=RESET_RATE_LIMIT_SECONDS)
        except CacheError:
            logger.warning("Could not set password reset rate-limit key", exc_info=True)

        link = f"{self._frontend_url}/reset-password?token={token}"
        message = Message(
            to=user.email,
            subject="Password Reset Request",
            html=f'<p>Click <a href="{link}">here</a> to reset your password. This link expires in 1 hour.</p>',
            body=f"Reset your password: {link}\nThis link expires in 1 hour.",
        )
        self._dispatcher.submit(self._sender.send, message)
        logger.info("Password reset requested for user id=%s", user.id)

    def consume_reset(self, token: str, new_password: str) -> None:
        with collaborator_errors("failed to verify reset token"):
            with self._store.transaction() as uow:
                record = uow.password_resets.get(token)
        if record is None:
            raise _invalid_token()
        if record.expires_at <= self._clock():
            with collaborator_errors("failed to delete expired reset token"):
                with self._store.transaction() as uow:
                    uow.password_resets.delete(token)
            raise AuthError(ErrorKind.BAD_REQUEST, "token_expired", "reset token has expired")

        password_hash = hash_password(new_password, rounds=self._rounds)
        with collaborator_errors("failed to reset password"):
            with self._store.transaction() as uow:
                if not uow.users.update_password(record.user_id, password_hash):
                    raise _invalid_token()
                if uow.password_resets.delete(token) != 1:
                    raise _invalid_token()
                revoked = uow.refresh_tokens.delete_by_user_id(record.user_id)
        logger.info("Password reset for user id=%s, revoked %d session(s)", record.user_id, revoked)
