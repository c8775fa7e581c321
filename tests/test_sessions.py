"""
tests/test_sessions.py -- Unit tests for SessionTokenService.

Covers:
  - login issues a pair; refresh tokens are stored as SHA-256 only
  - rotation consumes the presented token; reuse fails
  - a rotation that loses the race for the row mints nothing
  - expired refresh tokens are deleted on first use
  - logout idempotence, logout everywhere, purge of expired tokens
  - access token issuer/audience/expiry checks
"""

from __future__ import annotations

import pytest
from sqlalchemy import text

from auth.errors import AuthError, ErrorKind
from auth.tokens import create_access_token, hash_refresh_token

SECRET = "test-secret-key-0123456789abcdef0123456789"


def _refresh_rows(store, user_id):
    with store.transaction() as uow:
        return uow.refresh_tokens.list_for_user(user_id)


class TestLogin:
    def test_login_returns_pair(self, sessions, user):
        pair = sessions.login("a@x.com", "Aa1!aaaa")
        assert pair.user.id == user.id
        assert pair.expires_in == 900
        assert len(pair.refresh_token) == 64
        claims = sessions.parse_access_token(pair.access_token)
        assert claims.user_id == user.id
        assert claims.email == "a@x.com"
        assert claims.role == "user"
        assert claims.issuer == "idcore"
        assert claims.audience == "idcore-api"

    def test_login_failure_issues_nothing(self, sessions, user, store):
        with pytest.raises(AuthError):
            sessions.login("a@x.com", "wrong")
        assert _refresh_rows(store, user.id) == []

    def test_only_hash_is_stored(self, sessions, user, store):
        plain = sessions.issue_refresh_token(user.id)
        rows = _refresh_rows(store, user.id)
        assert len(rows) == 1
        assert rows[0].token_hash == hash_refresh_token(plain)
        assert rows[0].token_hash != plain
        with store.engine.connect() as conn:
            raw = conn.execute(text("SELECT * FROM refresh_tokens")).fetchall()
        assert len(raw) == 1
        assert all(plain not in str(value) for value in raw[0])

    def test_each_login_opens_a_separate_session(self, sessions, user, store):
        first = sessions.login("a@x.com", "Aa1!aaaa")
        second = sessions.login("a@x.com", "Aa1!aaaa")
        assert first.refresh_token != second.refresh_token
        assert len(_refresh_rows(store, user.id)) == 2


class TestRotation:
    def test_rotate_replaces_token(self, sessions, user, store):
        pair = sessions.login("a@x.com", "Aa1!aaaa")
        rotated = sessions.rotate(pair.refresh_token)
        assert rotated.refresh_token != pair.refresh_token
        assert rotated.user.id == user.id
        rows = _refresh_rows(store, user.id)
        assert [r.token_hash for r in rows] == [hash_refresh_token(rotated.refresh_token)]

    def test_reuse_after_rotation_fails(self, sessions, user):
        pair = sessions.login("a@x.com", "Aa1!aaaa")
        sessions.rotate(pair.refresh_token)
        with pytest.raises(AuthError) as exc_info:
            sessions.rotate(pair.refresh_token)
        assert exc_info.value.kind is ErrorKind.UNAUTHORIZED
        assert exc_info.value.code == "invalid_refresh_token"

    def test_unknown_token(self, sessions):
        with pytest.raises(AuthError) as exc_info:
            sessions.rotate("0" * 64)
        assert exc_info.value.code == "invalid_refresh_token"

    def test_losing_the_claim_mints_nothing(self, sessions, user, store, monkeypatch):
        """A concurrent rotation deleted the row between verify and claim."""
        pair = sessions.login("a@x.com", "Aa1!aaaa")
        record = sessions.verify_refresh_token(pair.refresh_token)
        with store.transaction() as uow:
            uow.refresh_tokens.delete_by_hash(record.token_hash)
        monkeypatch.setattr(sessions, "verify_refresh_token", lambda token: record)

        with pytest.raises(AuthError) as exc_info:
            sessions.rotate(pair.refresh_token)
        assert exc_info.value.code == "invalid_refresh_token"
        assert _refresh_rows(store, user.id) == []

    def test_rotation_for_deleted_user_fails(self, sessions, credentials, user, store):
        plain = sessions.issue_refresh_token(user.id)
        with store.transaction() as uow:
            uow.users.soft_delete(user.id)
        with pytest.raises(AuthError) as exc_info:
            sessions.rotate(plain)
        assert exc_info.value.kind is ErrorKind.NOT_FOUND
        assert _refresh_rows(store, user.id) == []

    def test_expired_token_is_deleted(self, sessions, user, store, clock):
        plain = sessions.issue_refresh_token(user.id)
        clock.advance(days=30)
        with pytest.raises(AuthError) as exc_info:
            sessions.rotate(plain)
        assert exc_info.value.code == "refresh_token_expired"
        assert _refresh_rows(store, user.id) == []
        with pytest.raises(AuthError) as exc_info:
            sessions.rotate(plain)
        assert exc_info.value.code == "invalid_refresh_token"


class TestRevocation:
    def test_revoke_is_idempotent(self, sessions, user, store):
        plain = sessions.issue_refresh_token(user.id)
        sessions.revoke_refresh_token(plain)
        sessions.revoke_refresh_token(plain)
        sessions.revoke_refresh_token("never-issued")
        assert _refresh_rows(store, user.id) == []

    def test_revoked_token_cannot_rotate(self, sessions, user):
        plain = sessions.issue_refresh_token(user.id)
        sessions.revoke_refresh_token(plain)
        with pytest.raises(AuthError) as exc_info:
            sessions.rotate(plain)
        assert exc_info.value.code == "invalid_refresh_token"

    def test_revoke_all_only_touches_one_user(self, sessions, credentials, user, store):
        other = credentials.register("b@x.com", "Aa1!aaaa", "B")
        sessions.issue_refresh_token(user.id)
        sessions.issue_refresh_token(user.id)
        kept = sessions.issue_refresh_token(other.id)

        assert sessions.revoke_all_for_user(user.id) == 2
        assert _refresh_rows(store, user.id) == []
        assert sessions.rotate(kept).user.id == other.id

    def test_purge_expired(self, sessions, user, store, clock):
        sessions.issue_refresh_token(user.id)
        clock.advance(days=31)
        fresh = sessions.issue_refresh_token(user.id)
        assert sessions.purge_expired() == 1
        assert [r.token_hash for r in _refresh_rows(store, user.id)] == [hash_refresh_token(fresh)]


class TestAccessTokens:
    def _token(self, **overrides):
        kwargs = dict(secret=SECRET, expire_seconds=900, issuer="idcore", audience="idcore-api")
        kwargs.update(overrides)
        return create_access_token(1, "a@x.com", "user", **kwargs)

    def test_round_trip(self, sessions):
        claims = sessions.parse_access_token(self._token())
        assert claims.user_id == 1

    def test_wrong_audience(self, sessions):
        with pytest.raises(AuthError) as exc_info:
            sessions.parse_access_token(self._token(audience="other-api"))
        assert exc_info.value.code == "wrong_issuer_or_audience"

    def test_wrong_issuer(self, sessions):
        with pytest.raises(AuthError) as exc_info:
            sessions.parse_access_token(self._token(issuer="someone-else"))
        assert exc_info.value.code == "wrong_issuer_or_audience"

    def test_expired(self, sessions):
        with pytest.raises(AuthError) as exc_info:
            sessions.parse_access_token(self._token(expire_seconds=-60))
        assert exc_info.value.code == "token_expired"

    def test_wrong_key(self, sessions):
        with pytest.raises(AuthError) as exc_info:
            sessions.parse_access_token(self._token(secret="another-secret-key-0123456789abcdef"))
        assert exc_info.value.kind is ErrorKind.UNAUTHORIZED
        assert exc_info.value.code == "invalid_token"

    def test_garbage(self, sessions):
        with pytest.raises(AuthError) as exc_info:
            sessions.parse_access_token("not.a.jwt")
        assert exc_info.value.code == "invalid_token"
