# covercart/core/security.py
"""
JWT verification for principals issued by the identity service.

Tokens are HS* signed with SECRET_KEY; payload carries:
  sub  -> principal id (string)
  role -> "user" | "admin"
  exp  -> expiry (seconds since epoch)

create_access_token() exists for local tooling and tests; production tokens
come from the identity collaborator.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Optional

from jose import jwt
from jose.exceptions import ExpiredSignatureError, JOSEError, JWTClaimsError, JWTError

from covercart.core.config import settings

ROLE_USER = "user"
ROLE_ADMIN = "admin"


@dataclass(frozen=True)
class Principal:
    id: str
    role: str = ROLE_USER

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def constant_time_compare(a: str, b: str) -> bool:
    """Header values may carry any character; those never match a hex or base64 digest."""
    return hmac.compare_digest(a.encode("utf-8", "replace"), b.encode("utf-8", "replace"))


def verify_body_signature(raw_body: bytes, header: Optional[str], secret: Optional[str]) -> bool:
    """
    HMAC-SHA256 over the raw body. The header may carry a "sha256=" prefix and
    the digest may be hex or base64 (carriers differ).
    """
    if not (header and secret):
        return False
    value = header.strip()
    if value.lower().startswith("sha256="):
        value = value[7:]
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return constant_time_compare(value.lower(), digest.hex()) or constant_time_compare(
        value, base64.b64encode(digest).decode("ascii")
    )


def create_access_token(
    subject: str,
    role: str = ROLE_USER,
    expires_delta: Optional[timedelta] = None,
    extra: Optional[dict[str, Any]] = None,
) -> str:
    now = _utcnow()
    claims: dict[str, Any] = {
        "sub": str(subject),
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int((now + (expires_delta or timedelta(hours=1))).timestamp()),
    }
    if extra:
        claims.update(extra)
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_and_validate(token: str) -> dict[str, Any]:
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except ExpiredSignatureError as e:
        raise ValueError("Token expired") from e
    except JWTClaimsError as e:
        raise ValueError(f"Invalid claims: {e}") from e
    except JWTError as e:
        raise ValueError(f"Invalid token: {e}") from e
    except JOSEError as e:
        raise ValueError(f"Token error: {e}") from e

    if not payload.get("sub"):
        raise ValueError("Token subject (sub) missing")
    return payload


def principal_from_token(token: str) -> Principal:
    payload = decode_and_validate(token)
    role = payload.get("role") or ROLE_USER
    if isinstance(role, (list, tuple)):
        role = ROLE_ADMIN if ROLE_ADMIN in role else ROLE_USER
    return Principal(id=str(payload["sub"]), role=str(role))


__all__ = [
    "Principal",
    "ROLE_USER",
    "ROLE_ADMIN",
    "constant_time_compare",
    "verify_body_signature",
    "create_access_token",
    "decode_and_validate",
    "principal_from_token",
]
