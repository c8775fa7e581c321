"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores map rows to
these types; services and routes do the work.

Layer rule: no imports from api/, cache/, or notify/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

ROLE_USER = "user"
ROLE_ADMIN = "admin"

PROVIDER_LOCAL = "local"
PROVIDER_GOOGLE = "google"


@dataclass
class User:
    """An identity record.

    password_hash is None for OAuth-only accounts (they have no local password).
    external_id is the provider's stable subject id; it is None until the
    account is linked. An account can hold both a password hash and an
    external id.

    deleted_at marks a soft delete. Soft-deleted users are invisible to every
    lookup the services perform, but their email stays reserved by the UNIQUE
    constraint.
    """

    email: str
    name: str
    role: str = ROLE_USER
    id: int | None = None
    password_hash: str | None = None  # None = OAuth-only user
    external_id: str | None = None
    auth_provider: str = PROVIDER_LOCAL
    email_verified_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None

    @property
    def email_verified(self) -> bool:
        return self.email_verified_at is not None


@dataclass
class RefreshToken:
    """One active session grant.

    token_hash is SHA-256(plaintext) as hex. The plaintext is returned to the
    caller once at creation and never persisted or logged.
    """

    user_id: int
    token_hash: str
    expires_at: datetime
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class OneTimeToken:
    """A single-use, time-bounded grant (password reset or email verification).

    The value is stored in cleartext: it is narrowly scoped, short-lived and
    deleted on first use. Consumption deletes the row.
    """

    user_id: int
    token: str
    expires_at: datetime
    id: int | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class AccessClaims:
    """Identity carried by a validated access token. No store lookup backs it."""

    user_id: int
    email: str
    role: str
    issuer: str
    audience: str
    expires_at: datetime


@dataclass
class TokenPair:
    """What login, refresh rotation and the OAuth callback hand back to the caller."""

    access_token: str
    refresh_token: str
    expires_in: int
    user: User
