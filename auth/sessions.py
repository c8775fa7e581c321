"""
auth/sessions.py -- Access tokens, refresh tokens, and rotation.

Two kinds of session credential:
  Access token  -- short-lived HS256 JWT (auth/tokens.py). Verified by
                   signature alone, never looked up.
  Refresh token -- 32 random bytes, hex encoded, handed to the client once.
                   Only SHA-256(plaintext) is stored. Lifecycle:
                   Active -> rotated | revoked | expired-and-reaped -> Deleted.
                   A deleted token never verifies again.

Rotation [R1]:
  rotate() runs verify -> revoke -> load user -> mint, in that order. The
  revoke step claims the token: only the caller whose DELETE actually
  removed the row continues. A concurrent rotation of the same token sees
  rowcount 0 and fails invalid_refresh_token, so a stolen-then-shared token
  yields at most one new pair. If the revoke itself fails, nothing is minted.

  revoke_refresh_token() (logout) stays idempotent: an unknown or already
  deleted token is not an error.

Layer rule: no imports from api/ or notify/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from auth.credentials import CredentialService
from auth.errors import AuthError, ErrorKind, collaborator_errors
from auth.models import AccessClaims, RefreshToken, TokenPair, User
from auth.store import AuthStore
from auth.tokens import create_access_token, decode_access_token, generate_opaque_token, hash_refresh_token

logger = logging.getLogger("idcore.auth")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _invalid_refresh_token() -> AuthError:
    return AuthError(ErrorKind.UNAUTHORIZED, "invalid_refresh_token", "invalid refresh token")


class SessionTokenService:
    def __init__(
        self,
        store: AuthStore,
        credentials: CredentialService,
        *,
        secret: str,
        access_expire_seconds: int = 3600,
        refresh_expire_days: int = 30,
        issuer: str = "idcore",
        audience: str = "idcore-api",
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._credentials = credentials
        self._secret = secret
        self.access_expire_seconds = access_expire_seconds
        self._refresh_ttl = timedelta(days=refresh_expire_days)
        self._issuer = issuer
        self._audience = audience
        self._clock = clock

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def mint_access_token(self, user: User) -> str:
        return create_access_token(
            user.id,
            user.email,
            user.role,
            secret=self._secret,
            expire_seconds=self.access_expire_seconds,
            issuer=self._issuer,
            audience=self._audience,
        )

    def parse_access_token(self, token: str) -> AccessClaims:
        return decode_access_token(token, secret=self._secret, issuer=self._issuer, audience=self._audience)

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def issue_refresh_token(self, user_id: int) -> str:
        """Store a new refresh token for user_id and return its plaintext (shown once)."""
        plain = generate_opaque_token()
        with collaborator_errors("failed to store refresh token"):
            with self._store.transaction() as uow:
                uow.refresh_tokens.create(user_id, hash_refresh_token(plain), self._clock() + self._refresh_ttl)
        return plain

    def verify_refresh_token(self, token: str) -> RefreshToken:
        """Return the stored record for token.

        Unknown -> invalid_refresh_token. Expired -> the record is deleted,
        then refresh_token_expired.
        """
        token_hash = hash_refresh_token(token)
        with collaborator_errors("failed to verify refresh token"):
            with self._store.transaction() as uow:
                record = uow.refresh_tokens.get_by_hash(token_hash)
        if record is None:
            raise _invalid_refresh_token()
        if record.expires_at <= self._clock():
            with collaborator_errors("failed to delete expired refresh token"):
                with self._store.transaction() as uow:
                    uow.refresh_tokens.delete_by_hash(token_hash)
            raise AuthError(ErrorKind.UNAUTHORIZED, "refresh_token_expired", "refresh token expired")
        return record

    def revoke_refresh_token(self, token: str) -> None:
        """Delete token if it exists. Idempotent."""
        with collaborator_errors("failed to revoke refresh token"):
            with self._store.transaction() as uow:
                uow.refresh_tokens.delete_by_hash(hash_refresh_token(token))

    def revoke_all_for_user(self, user_id: int) -> int:
        """Delete every refresh token user_id holds (logout everywhere). Returns count removed."""
        with collaborator_errors("failed to revoke refresh tokens"):
            with self._store.transaction() as uow:
                removed = uow.refresh_tokens.delete_by_user_id(user_id)
        logger.info("Revoked %d refresh token(s) for user id=%s", removed, user_id)
        return removed

    def _claim(self, token: str) -> None:
        with collaborator_errors("failed to revoke refresh token"):
            with self._store.transaction() as uow:
                claimed = uow.refresh_tokens.delete_by_hash(hash_refresh_token(token))
        if claimed != 1:
            # Another rotation of the same token got there first [R1].
            logger.warning("Refresh token reuse detected; rotation refused")
            raise _invalid_refresh_token()

    # ------------------------------------------------------------------
    # Token pairs
    # ------------------------------------------------------------------

    def issue_pair(self, user: User) -> TokenPair:
        return TokenPair(
            access_token=self.mint_access_token(user),
            refresh_token=self.issue_refresh_token(user.id),
            expires_in=self.access_expire_seconds,
            user=user,
        )

    def login(self, email: str, password: str) -> TokenPair:
        """Authenticate a password login and open a session."""
        user = self._credentials.authenticate(email, password)
        return self.issue_pair(user)

    def rotate(self, token: str) -> TokenPair:
        """Exchange a refresh token for a new pair. The presented token is consumed [R1]."""
        record = self.verify_refresh_token(token)
        self._claim(token)
        user = self._credentials.get_user(record.user_id)
        return self.issue_pair(user)

    def purge_expired(self) -> int:
        """Reap expired refresh, reset and verification tokens."""
        with collaborator_errors("failed to purge expired tokens"):
            return self._store.purge_expired_tokens(self._clock())
