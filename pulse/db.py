from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker

from pulse.auth import hash_password
from pulse.config import get_settings
from pulse.models import Base, Role, User

log = logging.getLogger(__name__)

_lock = threading.Lock()
_engine = None
_SessionLocal = None


def init_db(db_path: str | Path | None = None) -> None:
    global _engine, _SessionLocal
    settings = get_settings()
    with _lock:
        if _engine is not None:
            _engine.dispose()
        db_path = Path(db_path) if db_path is not None else settings.database_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        _engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
    if settings.admin_email and settings.admin_password:
        with session_scope() as session:
            seed_admin(session, settings.admin_email, settings.admin_password)


def seed_admin(session: Session, email: str, password: str, name: str = "Admin") -> User | None:
    """Create the bootstrap admin unless a user with *email* already exists."""
    email = email.strip().lower()
    existing = session.execute(select(User).where(User.email == email)).scalars().first()
    if existing is not None:
        return None
    admin = User(name=name, email=email, password_hash=hash_password(password), role=Role.ADMIN)
    session.add(admin)
    session.commit()
    log.info("Seeded admin user %s", email)
    return admin


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()  # type: ignore[misc]


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Context manager providing a transactional session scope.

    Usage (MCP server, scripts, etc.)::

        with session_scope() as session:
            ...
    """
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def session_generator() -> Generator[Session, None, None]:
    """Generator-based session suitable for FastAPI ``Depends()``."""
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
