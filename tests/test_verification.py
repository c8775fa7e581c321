"""
tests/test_verification.py -- Unit tests for EmailVerificationService.

Covers:
  - send_verification replaces earlier tokens and emails a 24-hour link
  - verify marks the email verified and consumes the token
  - expired and unknown tokens
  - resend: rate limit, silence for unknown and already-verified emails
"""

from __future__ import annotations

import pytest

from auth.errors import AuthError, ErrorKind
from auth.verification import VERIFICATION_RATE_LIMIT_SECONDS


def _verification_rows(store, user_id):
    with store.transaction() as uow:
        return uow.email_verifications.list_for_user(user_id)


def test_send_verification_emails_link(verification, user, sender, dispatcher, store):
    verification.send_verification(user.id, user.email)
    dispatcher.drain()

    [message] = sender.messages
    assert message.to == "a@x.com"
    assert message.subject == "Verify Your Email Address"
    [token] = sender.tokens()
    assert f"http://frontend.test/verify-email?token={token}" in message.html
    [row] = _verification_rows(store, user.id)
    assert row.token == token


def test_send_verification_replaces_earlier_token(verification, user, sender, dispatcher, store):
    verification.send_verification(user.id, user.email)
    verification.send_verification(user.id, user.email)
    dispatcher.drain()
    first, second = sender.tokens()

    assert [r.token for r in _verification_rows(store, user.id)] == [second]
    with pytest.raises(AuthError) as exc_info:
        verification.verify(first)
    assert exc_info.value.code == "invalid_or_expired_token"


def test_verify_marks_user_verified(verification, credentials, user, sender, dispatcher, store):
    verification.send_verification(user.id, user.email)
    dispatcher.drain()
    [token] = sender.tokens()

    verification.verify(token)

    assert credentials.get_user(user.id).email_verified
    assert _verification_rows(store, user.id) == []
    with pytest.raises(AuthError):
        verification.verify(token)


def test_verify_expired_token(verification, credentials, user, sender, dispatcher, clock, store):
    verification.send_verification(user.id, user.email)
    dispatcher.drain()
    [token] = sender.tokens()
    clock.advance(hours=24)

    with pytest.raises(AuthError) as exc_info:
        verification.verify(token)
    assert exc_info.value.kind is ErrorKind.BAD_REQUEST
    assert exc_info.value.code == "token_expired"
    assert _verification_rows(store, user.id) == []
    assert not credentials.get_user(user.id).email_verified


def test_verify_unknown_token(verification):
    with pytest.raises(AuthError) as exc_info:
        verification.verify("unknown")
    assert exc_info.value.code == "invalid_or_expired_token"


class TestResend:
    def test_resend_sends_new_link(self, verification, user, sender, dispatcher):
        verification.resend_verification("a@x.com")
        dispatcher.drain()
        assert len(sender.messages) == 1

    def test_resend_rate_limited(self, verification, user, sender, dispatcher, clock):
        verification.resend_verification("a@x.com")
        with pytest.raises(AuthError) as exc_info:
            verification.resend_verification("a@x.com")
        assert exc_info.value.kind is ErrorKind.RATE_LIMITED
        assert exc_info.value.code == "verification_rate_limited"

        clock.advance(seconds=VERIFICATION_RATE_LIMIT_SECONDS)
        verification.resend_verification("a@x.com")
        dispatcher.drain()
        assert len(sender.messages) == 2

    def test_resend_unknown_email_is_silent(self, verification, sender, dispatcher):
        verification.resend_verification("nobody@x.com")
        verification.resend_verification("nobody@x.com")
        dispatcher.drain()
        assert sender.messages == []

    def test_resend_already_verified_is_silent(self, verification, user, sender, dispatcher, store):
        with store.transaction() as uow:
            uow.users.mark_email_verified(user.id)
        verification.resend_verification("a@x.com")
        dispatcher.drain()
        assert sender.messages == []
