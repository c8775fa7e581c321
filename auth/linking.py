"""
auth/linking.py -- Resolve an external (OAuth) identity to a local user.

find_or_link_or_create() runs in two phases:
  1. Read-only lookup by external id. The common case for returning users;
     no write, no transaction beyond the read.
  2. One unit of work: find by email and attach the external id (account
     linking), or create a password-less user whose email is already
     verified (the provider vouched for it).

Race breaker [L1]: users.email and users.external_id are UNIQUE in the
store. When two first-time callbacks for the same identity race, the loser's
phase 2 hits an IntegrityError and rolls back. The linker then repeats both
phases once, which finds the winner's row. A second failure is INTERNAL.

An identity whose email or external id is still held by a soft-deleted
account is refused with FORBIDDEN/account_deleted instead of colliding on
the UNIQUE constraints.

Layer rule: no imports from api/, cache/, or notify/.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from auth.errors import AuthError, ErrorKind, collaborator_errors
from auth.models import PROVIDER_GOOGLE, User
from auth.store import AuthStore

logger = logging.getLogger("idcore.auth")


class FederatedIdentityLinker:
    def __init__(self, store: AuthStore) -> None:
        self._store = store

    def find_or_link_or_create(self, external_id: str, email: str, name: str, provider: str = PROVIDER_GOOGLE) -> User:
        with collaborator_errors("failed to resolve external identity"):
            try:
                return self._resolve(external_id, email, name, provider)
            except IntegrityError:
                logger.info("Concurrent first login for external identity; retrying lookup")
            try:
                return self._resolve(external_id, email, name, provider)
            except IntegrityError as exc:
                raise AuthError.internal("failed to link external identity") from exc

    def _resolve(self, external_id: str, email: str, name: str, provider: str) -> User:
        with self._store.transaction() as uow:
            user = uow.users.get_by_external_id(external_id)
        if user is not None:
            return user

        with self._store.transaction() as uow:
            existing = uow.users.get_by_email(email)
            if existing is not None:
                linked = uow.users.link_external(existing.id, external_id, provider)
                logger.info("Linked %s identity to existing user id=%s", provider, existing.id)
                return linked
            if uow.users.is_held_by_deleted(email, external_id):
                raise AuthError(ErrorKind.FORBIDDEN, "account_deleted", "this account has been deleted")
            created = uow.users.create_oauth_user(email, name, external_id, provider)
        logger.info("Created user id=%s from %s login", created.id, provider)
        return created
