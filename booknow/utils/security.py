from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from jose import JWTError, jwt
from ..config import settings

ROLES = ("user", "hotel", "admin")


@dataclass(frozen=True)
class Principal:
    """Authenticated caller. subject_id is a guest id, hotel id or admin id."""
    role: str
    subject_id: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def is_hotel(self) -> bool:
        return self.role == "hotel"

    @property
    def is_user(self) -> bool:
        return self.role == "user"

    def __str__(self) -> str:
        return f"{self.role}:{self.subject_id}"


def create_access_token(subject_id: str, role: str, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT access token.

    Tokens are issued by the identity service in production; this is used by
    tests and local tooling.
    """
    if role not in ROLES:
        raise ValueError(f"Unknown role: {role}")
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    to_encode = {"sub": subject_id, "role": role, "exp": expire, "type": "access"}
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def decode_token(token: str) -> Optional[dict]:
    """Decode and verify a JWT token"""
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None


def principal_from_token(token: str) -> Optional[Principal]:
    """Verify an access token and turn it into a Principal"""
    payload = decode_token(token)
    if not payload or payload.get("type") != "access":
        return None
    role = payload.get("role")
    subject_id = payload.get("sub")
    if role not in ROLES or not subject_id:
        return None
    return Principal(role=role, subject_id=str(subject_id))
