"""Signal store: read access to projects and their signals, plus the score write-back.

The scoring services only talk to a :class:`SignalStore`; the SQLAlchemy
implementation is built per request from a session and passed down.
"""
from __future__ import annotations

import functools
import logging
from datetime import datetime
from typing import Callable, Protocol, TypeVar

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from pulse.errors import UpstreamError
from pulse.models import Checkin, Feedback, Project, ProjectStatus, Risk, RiskStatus, Severity, project_employees

log = logging.getLogger(__name__)

T = TypeVar("T")


class SignalStore(Protocol):
    def find_project(self, project_id: int) -> Project | None: ...

    def list_projects(self, *, employee_id: int | None = None, client_id: int | None = None) -> list[Project]: ...

    def find_checkins(
        self, *, project_id: int | None = None, employee_id: int | None = None, week: str | None = None,
    ) -> list[Checkin]: ...

    def find_feedback(self, *, project_id: int | None = None) -> list[Feedback]: ...

    def find_risks(
        self, *, project_id: int | None = None, status: RiskStatus | None = None,
        severity: Severity | None = None, employee_id: int | None = None,
    ) -> list[Risk]: ...

    def update_project_score(
        self, project_id: int, score: int, status: ProjectStatus, updated_at: datetime,
    ) -> bool: ...


def _upstream(fn: Callable[..., T]) -> Callable[..., T]:
    """Translate database failures into UpstreamError."""
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except SQLAlchemyError as exc:
            log.warning("Signal store call %s failed: %s", fn.__name__, exc)
            raise UpstreamError(f"Signal store unavailable: {exc}") from exc
    return wrapper


class SqlSignalStore:
    """SignalStore backed by a SQLAlchemy session.

    The caller owns commit/close, except for ``update_project_score``, which
    commits its write immediately.
    """

    def __init__(self, session: Session):
        self.session = session

    @_upstream
    def find_project(self, project_id: int) -> Project | None:
        return self.session.execute(select(Project).where(Project.id == project_id)).scalars().first()

    @_upstream
    def list_projects(self, *, employee_id: int | None = None, client_id: int | None = None) -> list[Project]:
        query = select(Project)
        if employee_id is not None:
            query = query.join(project_employees, project_employees.c.project_id == Project.id).where(
                project_employees.c.user_id == employee_id
            )
        if client_id is not None:
            query = query.where(Project.client_id == client_id)
        return list(self.session.execute(query.order_by(Project.id)).scalars().unique().all())

    @_upstream
    def find_checkins(
        self, *, project_id: int | None = None, employee_id: int | None = None, week: str | None = None,
    ) -> list[Checkin]:
        query = select(Checkin)
        if project_id is not None:
            query = query.where(Checkin.project_id == project_id)
        if employee_id is not None:
            query = query.where(Checkin.employee_id == employee_id)
        if week is not None:
            query = query.where(Checkin.week == week)
        return list(self.session.execute(query.order_by(Checkin.id)).scalars().all())

    @_upstream
    def find_feedback(self, *, project_id: int | None = None) -> list[Feedback]:
        query = select(Feedback)
        if project_id is not None:
            query = query.where(Feedback.project_id == project_id)
        return list(self.session.execute(
            query.order_by(Feedback.created_at.desc(), Feedback.id.desc())
        ).scalars().all())

    @_upstream
    def find_risks(
        self, *, project_id: int | None = None, status: RiskStatus | None = None,
        severity: Severity | None = None, employee_id: int | None = None,
    ) -> list[Risk]:
        query = select(Risk)
        if project_id is not None:
            query = query.where(Risk.project_id == project_id)
        if status is not None:
            query = query.where(Risk.status == status)
        if severity is not None:
            query = query.where(Risk.severity == severity)
        if employee_id is not None:
            query = query.where(Risk.employee_id == employee_id)
        return list(self.session.execute(
            query.order_by(Risk.created_at.desc(), Risk.id.desc())
        ).scalars().all())

    @_upstream
    def update_project_score(
        self, project_id: int, score: int, status: ProjectStatus, updated_at: datetime,
    ) -> bool:
        result = self.session.execute(
            update(Project).where(Project.id == project_id)
            .values(health_score=score, status=status, updated_at=updated_at)
            .execution_options(synchronize_session="fetch")
        )
        self.session.commit()
        return result.rowcount > 0
