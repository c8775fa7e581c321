"""
auth/credentials.py -- Registration, password login with lockout, and profile changes.

Security design decisions:
  [C1] Timing equalization: authenticate() runs bcrypt against a dummy hash
       when the email is unknown or belongs to an OAuth-only account, so the
       response time does not reveal whether an account exists. The failure
       itself is the same AuthError.invalid_credentials() in every case.

  [C2] Brute-force lockout: failed attempts are counted per email in the
       ephemeral cache under login_attempts:<email>. The counter starts at 1,
       increments on each failure, and every failure resets its TTL to the
       lockout window. Once it reaches MAX_LOGIN_ATTEMPTS, authenticate()
       refuses before touching the store, even for a correct password.
       Counter read-then-write is not atomic; a burst of concurrent failures
       may under-count slightly. That is accepted for an anti-automation
       control.

  [C3] An unverified email (when verification is required) is not a
       credential failure: it returns email_not_verified without touching
       the counter.

  Cache reads that gate the lockout propagate as INTERNAL. Counter writes
  are best effort: a failure is logged and login proceeds.

Layer rule: no imports from api/ or notify/.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from auth.errors import AuthError, ErrorKind, collaborator_errors
from auth.models import ROLE_ADMIN, User
from auth.store import AuthStore
from auth.tokens import hash_password, verify_password
from cache.store import Cache, CacheError

logger = logging.getLogger("idcore.auth")

LOGIN_ATTEMPT_PREFIX = "login_attempts:"
MAX_LOGIN_ATTEMPTS = 5
LOCKOUT_SECONDS = 15 * 60


class CredentialService:
    def __init__(
        self,
        store: AuthStore,
        cache: Cache,
        *,
        bcrypt_rounds: int = 12,
        require_email_verification: bool = False,
    ) -> None:
        self._store = store
        self._cache = cache
        self._rounds = bcrypt_rounds
        self._require_verification = require_email_verification
        # Same cost as real hashes so the unknown-user path takes as long [C1].
        self._dummy_hash = hash_password("idcore_timing_dummy", rounds=bcrypt_rounds)

    # ------------------------------------------------------------------
    # Registration and login
    # ------------------------------------------------------------------

    def register(self, email: str, password: str, name: str) -> User:
        """Create a local account. Raises CONFLICT/duplicate_email if the email is taken."""
        with collaborator_errors("failed to check existing user"):
            with self._store.transaction() as uow:
                existing = uow.users.get_by_email(email)
        if existing is not None:
            raise _duplicate_email()

        password_hash = hash_password(password, rounds=self._rounds)
        with collaborator_errors("failed to create user"):
            try:
                with self._store.transaction() as uow:
                    user = uow.users.create(email, password_hash, name)
            except IntegrityError as exc:
                # Lost a race with a concurrent registration, or the email
                # belongs to a soft-deleted account.
                raise _duplicate_email() from exc
        logger.info("Registered user id=%s", user.id)
        return user

    def authenticate(self, email: str, password: str) -> User:
        """Check an email/password pair. See [C1]-[C3] for the failure rules."""
        key = LOGIN_ATTEMPT_PREFIX + email
        with collaborator_errors("failed to read login attempts"):
            attempts = _parse_count(self._cache.get(key))
        if attempts >= MAX_LOGIN_ATTEMPTS:
            raise AuthError(
                ErrorKind.RATE_LIMITED,
                "account_locked",
                f"account temporarily locked, try again in {LOCKOUT_SECONDS // 60} minutes",
            )

        with collaborator_errors("failed to get user"):
            with self._store.transaction() as uow:
                user = uow.users.get_by_email(email)

        if user is None or user.password_hash is None:
            # Equalize timing -- do NOT return early before running bcrypt [C1]
            verify_password(password, self._dummy_hash)
            self._record_failure(key, attempts)
            raise AuthError.invalid_credentials()

        if not verify_password(password, user.password_hash):
            self._record_failure(key, attempts)
            raise AuthError.invalid_credentials()

        if self._require_verification and not user.email_verified:
            raise AuthError(ErrorKind.FORBIDDEN, "email_not_verified", "email not verified")

        self._clear_attempts(key)
        return user

    def _record_failure(self, key: str, attempts: int) -> None:
        try:
            self._cache.set(key, str(attempts + 1).encode("ascii"), ttl=LOCKOUT_SECONDS)
        except CacheError:
            logger.warning("Could not record failed login attempt", exc_info=True)

    def _clear_attempts(self, key: str) -> None:
        try:
            self._cache.delete(key)
        except CacheError:
            logger.warning("Could not clear login attempt counter", exc_info=True)

    # ------------------------------------------------------------------
    # Account management
    # ------------------------------------------------------------------

    def get_user(self, user_id: int) -> User:
        with collaborator_errors("failed to get user"):
            with self._store.transaction() as uow:
                user = uow.users.get_by_id(user_id)
        if user is None:
            raise AuthError.not_found()
        return user

    def change_password(self, user_id: int, current_password: str, new_password: str) -> None:
        """Replace a local password after checking the current one.

        OAuth-only accounts have no password to change and are rejected.
        """
        user = self.get_user(user_id)
        if user.password_hash is None:
            raise AuthError(ErrorKind.BAD_REQUEST, "oauth_account", "cannot change password for OAuth accounts")
        if not verify_password(current_password, user.password_hash):
            raise AuthError(ErrorKind.BAD_REQUEST, "wrong_current_password", "current password is incorrect")

        password_hash = hash_password(new_password, rounds=self._rounds)
        with collaborator_errors("failed to update password"):
            with self._store.transaction() as uow:
                updated = uow.users.update_password(user_id, password_hash)
        if not updated:
            raise AuthError.not_found()
        logger.info("Password changed for user id=%s", user_id)

    def update_profile(self, user_id: int, name: str | None = None, email: str | None = None) -> User:
        """Change name and/or email. Fields left as None keep their current value."""
        with collaborator_errors("failed to update user"):
            try:
                with self._store.transaction() as uow:
                    existing = uow.users.get_by_id(user_id)
                    if existing is None:
                        raise AuthError.not_found()
                    new_email = existing.email
                    if email is not None and email != existing.email:
                        if uow.users.get_by_email(email) is not None:
                            raise _duplicate_email("email already in use")
                        new_email = email
                    user = uow.users.update_profile(user_id, name if name is not None else existing.name, new_email)
            except IntegrityError as exc:
                raise _duplicate_email("email already in use") from exc
        if user is None:
            raise AuthError.not_found()
        return user

    def delete(self, user_id: int) -> None:
        """Soft-delete the user and revoke every refresh token they hold, atomically."""
        with collaborator_errors("failed to delete user"):
            with self._store.transaction() as uow:
                if not uow.users.soft_delete(user_id):
                    raise AuthError.not_found("user not found or already deleted")
                revoked = uow.refresh_tokens.delete_by_user_id(user_id)
        logger.info("Deleted user id=%s, revoked %d session(s)", user_id, revoked)

    def seed_admin(self, email: str, password: str, name: str) -> User | None:
        """Create an admin account unless one with this email already exists.

        Safe to call on every startup. Returns the new user, or None when
        nothing was created.
        """
        if not email or not password:
            logger.debug("Admin credentials not set, skipping admin seed")
            return None
        password_hash = hash_password(password, rounds=self._rounds)
        with collaborator_errors("failed to seed admin user"):
            try:
                with self._store.transaction() as uow:
                    if uow.users.get_by_email(email) is not None:
                        logger.debug("Admin user already exists, skipping seed")
                        return None
                    user = uow.users.create(email, password_hash, name, role=ROLE_ADMIN)
                    uow.users.mark_email_verified(user.id)
                    user = uow.users.get_by_id(user.id)
            except IntegrityError:
                logger.info("Admin email is held by a deleted account, skipping seed")
                return None
        logger.info("Admin user created (id=%s)", user.id)
        return user


def _duplicate_email(message: str = "email already registered") -> AuthError:
    return AuthError(ErrorKind.CONFLICT, "duplicate_email", message)


def _parse_count(raw: bytes | None) -> int:
    if raw is None:
        return 0
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring malformed login attempt counter")
        return 0
