"""
auth/tokens.py -- JWT, password hashing, and opaque token utilities.

Security design decisions:
  JWT: python-jose with HS256. Access tokens carry sub (user id), email,
       role, iss, aud, iat and exp. Verification is purely cryptographic --
       no store lookup. iss/aud are pinned on decode so a token minted for a
       different service with the same key is rejected.

  Passwords: bcrypt with an explicit cost factor. Bcrypt is the right choice
       for low-entropy secrets (passwords) because its cost factor makes
       brute-force expensive. checkpw compares in constant time.

  Opaque tokens: secrets.token_hex(32) gives 256 bits of entropy. Refresh
       tokens are stored as SHA-256(plaintext); bcrypt's intentional slowness
       is unnecessary for high-entropy random values and would rule out an
       O(1) lookup by hash.

  Nothing here reads configuration. Secret, lifetime, issuer and audience
  are explicit arguments, bound once by SessionTokenService.

Layer rule: no imports from api/, cache/, or notify/.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt
from jose.exceptions import JWTClaimsError

from auth.errors import AuthError, ErrorKind
from auth.models import AccessClaims

logger = logging.getLogger("idcore.auth")

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int = 12) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are truncated by bcrypt. The API layer
    caps password length well below that threshold.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the store -- treat as a mismatch, never as a match.
        logger.warning("Stored password hash is not a valid bcrypt hash")
        return False


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(
    user_id: int,
    email: str,
    role: str,
    *,
    secret: str,
    expire_seconds: int,
    issuer: str,
    audience: str,
) -> str:
    """Encode a signed JWT carrying the user's identity and role."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "email": email,
        "role": role,
        "iss": issuer,
        "aud": audience,
        "iat": now,
        "exp": now + timedelta(seconds=expire_seconds),
    }
    return jwt.encode(payload, secret, algorithm=_ALGORITHM)


def decode_access_token(token: str, *, secret: str, issuer: str, audience: str) -> AccessClaims:
    """Verify a JWT and return its claims.

    Raises AuthError(UNAUTHORIZED) with code token_expired,
    wrong_issuer_or_audience, or invalid_token.
    """
    try:
        payload = jwt.decode(token, secret, algorithms=[_ALGORITHM], audience=audience, issuer=issuer)
    except ExpiredSignatureError as exc:
        raise AuthError(ErrorKind.UNAUTHORIZED, "token_expired", "access token has expired") from exc
    except JWTClaimsError as exc:
        raise AuthError(
            ErrorKind.UNAUTHORIZED, "wrong_issuer_or_audience", "access token was not issued for this service"
        ) from exc
    except JWTError as exc:
        raise AuthError(ErrorKind.UNAUTHORIZED, "invalid_token", "invalid access token") from exc

    try:
        return AccessClaims(
            user_id=int(payload["sub"]),
            email=payload["email"],
            role=payload["role"],
            issuer=payload["iss"],
            audience=payload["aud"],
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise AuthError(ErrorKind.UNAUTHORIZED, "invalid_token", "invalid access token") from exc


# ---------------------------------------------------------------------------
# Opaque tokens (refresh, password reset, email verification)
# ---------------------------------------------------------------------------


def generate_opaque_token() -> str:
    """Return 32 random bytes as 64 hex characters (256 bits of entropy)."""
    return secrets.token_hex(32)


def hash_refresh_token(plain: str) -> str:
    """Return SHA-256(plain) as hex. Deterministic, so lookup by hash is O(1)."""
    return hashlib.sha256(plain.encode("utf-8")).hexdigest()
