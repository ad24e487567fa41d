from __future__ import annotations

from datetime import datetime, timedelta, timezone

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from backend.config import get_bcrypt_rounds, get_jwt_secret, get_token_ttl
from backend.errors import AuthError, AuthFailure

JWT_ALGORITHM = "HS256"

# bcrypt only looks at the first 72 bytes of the secret.
_BCRYPT_MAX_BYTES = 72


def _password_bytes(password: str) -> bytes:
    return password.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(password: str, rounds: int | None = None) -> str:
    salt = bcrypt.gensalt(rounds or get_bcrypt_rounds())
    return bcrypt.hashpw(_password_bytes(password), salt).decode("utf-8")


def verify_password(password: str, hashed_password: str | None) -> bool:
    """Check a plaintext password against a stored bcrypt hash.

    Accounts created through an external provider have no hash and never match.
    A malformed hash raises ``ValueError`` from bcrypt.
    """
    if not hashed_password:
        return False
    return bcrypt.checkpw(_password_bytes(password), hashed_password.encode("utf-8"))


def issue_token(
    user_id: int,
    *,
    secret: str | None = None,
    expires_in: timedelta | None = None,
    now: datetime | None = None,
) -> str:
    issued_at = now or datetime.now(timezone.utc)
    expires_at = issued_at + (expires_in or get_token_ttl())
    claims = {
        "sub": str(user_id),
        "userId": user_id,
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    return jwt.encode(claims, secret or get_jwt_secret(), algorithm=JWT_ALGORITHM)


def verify_token(token: str, *, secret: str | None = None) -> int:
    try:
        claims = jwt.decode(token, secret or get_jwt_secret(), algorithms=[JWT_ALGORITHM])
    except ExpiredSignatureError as exc:
        raise AuthError(AuthFailure.EXPIRED) from exc
    except JWTError as exc:
        raise AuthError(AuthFailure.INVALID) from exc

    subject = claims.get("sub")
    try:
        return int(subject)
    except (TypeError, ValueError) as exc:
        raise AuthError(AuthFailure.INVALID) from exc
