"""Password hashing, bearer tokens and the role → capability table."""
from __future__ import annotations

import enum
from datetime import UTC, datetime, timedelta
from typing import Any

from jose import JWTError, jwt
from passlib.context import CryptContext

from pulse.config import get_settings
from pulse.models import Role

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


class Capability(str, enum.Enum):
    MANAGE_USERS = "manage_users"
    MANAGE_PROJECTS = "manage_projects"
    VIEW_PROJECTS = "view_projects"
    VIEW_HEALTH = "view_health"
    VIEW_DASHBOARD = "view_dashboard"
    SUBMIT_CHECKIN = "submit_checkin"
    SUBMIT_FEEDBACK = "submit_feedback"
    RAISE_RISK = "raise_risk"


ROLE_CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.ADMIN: frozenset({
        Capability.MANAGE_USERS, Capability.MANAGE_PROJECTS, Capability.VIEW_PROJECTS,
        Capability.VIEW_HEALTH, Capability.VIEW_DASHBOARD,
    }),
    Role.EMPLOYEE: frozenset({
        Capability.VIEW_PROJECTS, Capability.SUBMIT_CHECKIN, Capability.RAISE_RISK,
    }),
    Role.CLIENT: frozenset({
        Capability.VIEW_PROJECTS, Capability.SUBMIT_FEEDBACK,
    }),
}


def can(role: Role, capability: Capability) -> bool:
    return capability in ROLE_CAPABILITIES.get(role, frozenset())


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(user_id: int, role: Role, expires_delta: timedelta | None = None) -> str:
    settings = get_settings()
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.token_expire_minutes)
    to_encode = {"sub": str(user_id), "role": role.value, "exp": datetime.now(UTC) + expires_delta}
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict[str, Any] | None:
    """Return the token payload, or None if it is invalid or expired."""
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
    if not str(payload.get("sub", "")).isdigit():
        return None
    return payload
