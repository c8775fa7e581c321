"""
tests/test_tokens.py -- Unit tests for auth/tokens.py helpers.

Covers:
  - bcrypt hash/verify, including a malformed stored hash
  - opaque token shape and refresh token hashing
"""

from __future__ import annotations

import hashlib

from auth.tokens import generate_opaque_token, hash_password, hash_refresh_token, verify_password


def test_hash_and_verify_password():
    hashed = hash_password("Aa1!aaaa", rounds=4)
    assert hashed.startswith("$2")
    assert verify_password("Aa1!aaaa", hashed)
    assert not verify_password("Aa1!aaab", hashed)


def test_hashes_are_salted():
    assert hash_password("same", rounds=4) != hash_password("same", rounds=4)


def test_malformed_hash_never_matches():
    assert not verify_password("anything", "not-a-bcrypt-hash")


def test_opaque_tokens_are_unique_hex():
    tokens = {generate_opaque_token() for _ in range(50)}
    assert len(tokens) == 50
    for token in tokens:
        assert len(token) == 64
        int(token, 16)


def test_refresh_token_hash_is_sha256():
    assert hash_refresh_token("abc") == hashlib.sha256(b"abc").hexdigest()
