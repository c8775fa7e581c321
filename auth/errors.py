"""
auth/errors.py -- The single error type raised by every core auth operation.

Each failure carries two tags:
  kind -- the coarse category (ErrorKind) the HTTP boundary maps to a status
          code through a lookup table. The boundary never inspects exception
          subclasses; it only reads exc.kind.
  code -- the specific variant ("account_locked", "duplicate_email", ...)
          returned to clients as a stable machine-readable string.

Collaborator failures (SQLAlchemy, cache backends) are converted into
AuthError(ErrorKind.INTERNAL) at the service boundary so that no
driver-specific detail leaks to callers. "Not found" is expressed by
repositories returning None, never by a driver exception.

Layer rule: no imports from api/ or notify/. From cache/ only CacheError,
so collaborator failures can be converted in one place.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError

from cache.store import CacheError

logger = logging.getLogger("idcore.auth")


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    BAD_REQUEST = "bad_request"
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    CONFLICT = "conflict"
    RATE_LIMITED = "rate_limited"
    INTERNAL = "internal"


class AuthError(Exception):
    """A tagged core failure. See module docstring."""

    def __init__(self, kind: ErrorKind, code: str, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.code = code
        self.message = message

    def __repr__(self) -> str:
        return f"AuthError({self.kind.value!r}, {self.code!r}, {self.message!r})"

    # ------------------------------------------------------------------
    # Constructors for the variants shared by more than one service
    # ------------------------------------------------------------------

    @classmethod
    def internal(cls, message: str) -> AuthError:
        return cls(ErrorKind.INTERNAL, "internal_error", message)

    @classmethod
    def not_found(cls, message: str = "user not found") -> AuthError:
        return cls(ErrorKind.NOT_FOUND, "not_found", message)

    @classmethod
    def invalid_credentials(cls) -> AuthError:
        # Same message for unknown email, OAuth-only account and wrong password.
        return cls(ErrorKind.UNAUTHORIZED, "invalid_credentials", "invalid email or password")


@contextmanager
def collaborator_errors(message: str) -> Iterator[None]:
    """Convert store and cache failures raised inside the block into AuthError.internal(message).

    AuthError passes through untouched. Callers that need to react to a
    specific driver error (IntegrityError on a UNIQUE constraint) catch it
    inside the block.
    """
    try:
        yield
    except (SQLAlchemyError, CacheError) as exc:
        logger.error("%s: %s", message, type(exc).__name__, exc_info=True)
        raise AuthError.internal(message) from exc
