"""FastAPI dependencies: request session, signal store, current user, capabilities."""
from __future__ import annotations

from typing import Callable, Generator

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy import select
from sqlalchemy.orm import Session

from pulse.auth import Capability, can, decode_token
from pulse.db import session_generator
from pulse.models import User
from pulse.periods import PeriodClock, current_period
from pulse.store import SqlSignalStore

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def signal_store(session: Session = Depends(db_session)) -> SqlSignalStore:
    return SqlSignalStore(session)


def period_clock() -> PeriodClock:
    return current_period


def current_user(
    token: str | None = Depends(oauth2_scheme), session: Session = Depends(db_session),
) -> User:
    if not token:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "No token",
                            headers={"WWW-Authenticate": "Bearer"})
    payload = decode_token(token)
    if payload is None:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token",
                            headers={"WWW-Authenticate": "Bearer"})
    user = session.execute(select(User).where(User.id == int(payload["sub"]))).scalars().first()
    if user is None:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "User not found")
    return user


def requires(capability: Capability) -> Callable[..., User]:
    """Dependency factory: the current user, provided their role grants *capability*."""
    def dependency(user: User = Depends(current_user)) -> User:
        if not can(user.role, capability):
            raise HTTPException(status.HTTP_403_FORBIDDEN, "Access denied")
        return user
    dependency.__name__ = f"requires_{capability.value}"
    return dependency
