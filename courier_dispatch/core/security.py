"""
Token and Password Helpers

Session tokens are HS256 JWTs carrying the account id, its role (also used
as audience) and a random jti so that two logins in the same second never
produce the same token. Passwords are stored as werkzeug hashes.

Version: 1.0.0
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import jwt
from werkzeug.security import check_password_hash, generate_password_hash

from courier_dispatch.core.config import Settings, get_settings
from courier_dispatch.core.errors import SessionInvalidError


@dataclass
class TokenClaims:
    """Identity extracted from a verified token."""
    user_id: int
    role: str
    expires_at: datetime


def create_session_token(
    user_id: int,
    role: str,
    settings: Optional[Settings] = None,
) -> tuple[str, datetime]:
    """
    Issue a signed session token.

    Returns:
        (token, naive UTC expiry)
    """
    settings = settings or get_settings()
    now = datetime.now(timezone.utc)
    expires = now + timedelta(days=settings.session_ttl_days)

    payload: dict[str, Any] = {
        "sub": str(user_id),
        "role": role,
        "aud": role,
        "iss": settings.jwt_issuer,
        "iat": now,
        "exp": expires,
        "jti": uuid.uuid4().hex,
    }
    token = jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return token, expires.replace(tzinfo=None)


def decode_session_token(token: str, settings: Optional[Settings] = None) -> TokenClaims:
    """
    Verify signature, issuer and expiry.

    Raises:
        SessionInvalidError: token expired or malformed
    """
    settings = settings or get_settings()

    try:
        unverified = jwt.decode(token, options={"verify_signature": False})
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=unverified.get("role"),
            issuer=settings.jwt_issuer,
        )
    except jwt.ExpiredSignatureError:
        raise SessionInvalidError("Session token expired")
    except jwt.InvalidTokenError as e:
        raise SessionInvalidError(f"Invalid session token: {e}")

    try:
        user_id = int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        raise SessionInvalidError("Invalid session token subject")

    return TokenClaims(
        user_id=user_id,
        role=payload["role"],
        expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc).replace(tzinfo=None),
    )


def hash_password(password: str) -> str:
    return generate_password_hash(password)


def verify_password(password_hash: Optional[str], password: str) -> bool:
    if not password_hash:
        return False
    return check_password_hash(password_hash, password)


@dataclass(frozen=True)
class Actor:
    """The authenticated caller of an operation."""
    user_id: int
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def is_courier(self) -> bool:
        return self.role == "courier"

    @property
    def is_restaurant(self) -> bool:
        return self.role == "restaurant"
