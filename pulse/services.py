"""Shared business logic for the Pulse API and MCP server."""
from __future__ import annotations

import logging
from collections import defaultdict
from datetime import UTC, datetime
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from pulse import health
from pulse.auth import hash_password, verify_password
from pulse.errors import NotFoundError, ValidationError
from pulse.health import HealthPolicy, HealthResult
from pulse.models import Checkin, Feedback, Project, Risk, RiskStatus, Role, Severity, User
from pulse.periods import current_period
from pulse.schemas import CheckinCreate, FeedbackCreate, ProjectCreate, ProjectUpdate, RiskCreate, UserCreate
from pulse.store import SignalStore

log = logging.getLogger(__name__)

PROJECT_UPDATABLE_FIELDS = ("name", "description", "start_date", "end_date", "client_id")

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def user_summary(user: User) -> dict:
    return {"id": user.id, "name": user.name, "email": user.email, "role": user.role}


def project_summary(proj: Project) -> dict:
    return {
        "id": proj.id, "name": proj.name, "description": proj.description,
        "start_date": proj.start_date, "end_date": proj.end_date,
        "client_id": proj.client_id, "employee_ids": proj.employee_ids,
        "status": proj.status, "health_score": proj.health_score,
        "created_at": _iso(proj.created_at), "updated_at": _iso(proj.updated_at),
    }


def checkin_summary(c: Checkin) -> dict:
    return {
        "id": c.id, "project_id": c.project_id, "employee_id": c.employee_id,
        "week": c.week, "progress_summary": c.progress_summary, "blockers": c.blockers,
        "confidence_level": c.confidence_level, "completion_percentage": c.completion_percentage,
        "created_at": _iso(c.created_at),
    }


def feedback_summary(f: Feedback) -> dict:
    return {
        "id": f.id, "project_id": f.project_id, "client_id": f.client_id, "week": f.week,
        "satisfaction_rating": f.satisfaction_rating, "communication_rating": f.communication_rating,
        "comments": f.comments, "flagged_issue": f.flagged_issue,
        "created_at": _iso(f.created_at),
    }


def risk_summary(r: Risk) -> dict:
    return {
        "id": r.id, "project_id": r.project_id, "employee_id": r.employee_id,
        "title": r.title, "severity": r.severity, "mitigation_plan": r.mitigation_plan,
        "status": r.status, "created_at": _iso(r.created_at),
    }


# ---------------------------------------------------------------------------
# Lookup & mutation helpers
# ---------------------------------------------------------------------------


def get_entity(session: Session, model, entity_id: int):
    """Fetch a single ORM entity by primary key, or None."""
    return session.execute(select(model).where(model.id == entity_id)).scalars().first()


def require_entity(session: Session, model, entity_id: int, label: str = "Entity"):
    obj = get_entity(session, model, entity_id)
    if obj is None:
        raise NotFoundError(label, entity_id)
    return obj


def apply_updates(obj, updates: dict[str, Any], fields: tuple[str, ...]) -> None:
    """Apply non-None values from updates dict to an ORM object."""
    for field in fields:
        val = updates.get(field)
        if val is not None:
            setattr(obj, field, val)


def _users_with_role(session: Session, user_ids: Iterable[int], role: Role, label: str) -> list[User]:
    users = []
    for uid in dict.fromkeys(user_ids):
        user = require_entity(session, User, uid, label)
        if user.role != role:
            raise ValidationError(f"User {uid} is not a {role.value}", field=f"{label.lower()}_id")
        users.append(user)
    return users


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def authenticate(session: Session, email: str, password: str) -> User | None:
    user = session.execute(select(User).where(User.email == email.strip().lower())).scalars().first()
    if user is None or not verify_password(password, user.password_hash):
        return None
    return user


def create_users(session: Session, users: list[UserCreate]) -> dict[str, list[str]]:
    """Create users in bulk, skipping emails that already exist (caller must commit)."""
    created: list[str] = []
    skipped: list[str] = []
    for u in users:
        if u.email in created or session.execute(select(User.id).where(User.email == u.email)).first():
            skipped.append(u.email)
            continue
        session.add(User(name=u.name, email=u.email, password_hash=hash_password(u.password), role=u.role))
        created.append(u.email)
    return {"created": created, "skipped": skipped}


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


def visible_projects(store: SignalStore, user: User) -> list[Project]:
    """Projects a user may see: all for admins, assigned for employees, owned for clients."""
    if user.role == Role.ADMIN:
        return store.list_projects()
    if user.role == Role.EMPLOYEE:
        return store.list_projects(employee_id=user.id)
    return store.list_projects(client_id=user.id)


def create_project(session: Session, body: ProjectCreate) -> Project:
    """Create a project with its employee assignments (caller must commit)."""
    if body.client_id is not None:
        _users_with_role(session, [body.client_id], Role.CLIENT, "Client")
    proj = Project(
        name=body.name, description=body.description,
        start_date=body.start_date, end_date=body.end_date, client_id=body.client_id,
        employees=_users_with_role(session, body.employee_ids, Role.EMPLOYEE, "Employee"),
    )
    session.add(proj)
    session.flush()
    return proj


def update_project(session: Session, proj: Project, body: ProjectUpdate) -> Project:
    """Partial update; null fields are ignored (caller must commit)."""
    updates = body.model_dump()
    if body.client_id is not None:
        _users_with_role(session, [body.client_id], Role.CLIENT, "Client")
    start = body.start_date or proj.start_date
    end = body.end_date or proj.end_date
    if start and end and end < start:
        raise ValidationError("end_date must not be before start_date", field="end_date")
    apply_updates(proj, updates, PROJECT_UPDATABLE_FIELDS)
    if body.employee_ids is not None:
        proj.employees = _users_with_role(session, body.employee_ids, Role.EMPLOYEE, "Employee")
    proj.updated_at = datetime.now(UTC).replace(tzinfo=None)
    return proj


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------


def submit_checkin(session: Session, employee: User, body: CheckinCreate, week: str | None = None) -> Checkin:
    require_entity(session, Project, body.project_id, "Project")
    checkin = Checkin(
        project_id=body.project_id, employee_id=employee.id, week=week or current_period(),
        progress_summary=body.progress_summary, blockers=body.blockers,
        confidence_level=body.confidence_level, completion_percentage=body.completion_percentage,
    )
    session.add(checkin)
    session.flush()
    return checkin


def submit_feedback(session: Session, client: User, body: FeedbackCreate, week: str | None = None) -> Feedback:
    require_entity(session, Project, body.project_id, "Project")
    feedback = Feedback(
        project_id=body.project_id, client_id=client.id, week=week or current_period(),
        satisfaction_rating=body.satisfaction_rating, communication_rating=body.communication_rating,
        comments=body.comments, flagged_issue=body.flagged_issue,
    )
    session.add(feedback)
    session.flush()
    return feedback


def raise_risk(session: Session, employee: User, body: RiskCreate) -> Risk:
    require_entity(session, Project, body.project_id, "Project")
    risk = Risk(
        project_id=body.project_id, employee_id=employee.id, title=body.title,
        severity=body.severity, mitigation_plan=body.mitigation_plan, status=body.status,
    )
    session.add(risk)
    session.flush()
    return risk


def visible_risks(store: SignalStore, user: User) -> list[Risk]:
    if user.role == Role.EMPLOYEE:
        return store.find_risks(employee_id=user.id)
    return store.find_risks()


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


def compute_health(store: SignalStore, project_id: int, now: datetime | None = None) -> HealthResult:
    """Recompute a project's absolute health score and persist it onto the project."""
    project = store.find_project(project_id)
    if project is None:
        raise NotFoundError("Project", project_id)
    checkins = store.find_checkins(project_id=project_id)
    feedback = store.find_feedback(project_id=project_id)
    result = health.evaluate(checkins, feedback, policy=HealthPolicy.ABSOLUTE)
    updated_at = now or datetime.now(UTC).replace(tzinfo=None)
    if not store.update_project_score(project_id, result.score, result.status, updated_at):
        raise NotFoundError("Project", project_id)
    log.info("Project %s health recomputed: %s (%s)", project_id, result.score, result.status.value)
    return result


def compute_dashboard(
    store: SignalStore, policy: HealthPolicy = HealthPolicy.MULTIPLICATIVE,
) -> list[dict]:
    """Every project annotated with its open-risk count and a freshly computed score."""
    projects = store.list_projects()
    risks_by_project: dict[int, list[Risk]] = defaultdict(list)
    checkins_by_project: dict[int, list[Checkin]] = defaultdict(list)
    feedback_by_project: dict[int, list[Feedback]] = defaultdict(list)
    for r in store.find_risks():
        risks_by_project[r.project_id].append(r)
    for c in store.find_checkins():
        checkins_by_project[c.project_id].append(c)
    for f in store.find_feedback():
        feedback_by_project[f.project_id].append(f)

    return [
        {
            "project": project_summary(p),
            "open_risks_count": sum(1 for r in risks_by_project[p.id] if health.is_open(r)),
            "health_score": health.score_for(
                policy, checkins_by_project[p.id], feedback_by_project[p.id], risks_by_project[p.id],
            ),
        }
        for p in projects
    ]


def pending_checkins(store: SignalStore, employee_id: int, period: str | None = None) -> list[dict]:
    """Assigned projects for which *employee_id* has not checked in this period."""
    period = period or current_period()
    submitted = {c.project_id for c in store.find_checkins(employee_id=employee_id, week=period)}
    return [
        {"project_id": p.id, "project_name": p.name, "week": period}
        for p in store.list_projects(employee_id=employee_id)
        if p.id not in submitted
    ]


def missing_checkins_this_period(store: SignalStore, period: str | None = None) -> list[Project]:
    """Projects with no check-in from any employee in *period*."""
    period = period or current_period()
    covered = {c.project_id for c in store.find_checkins(week=period)}
    return [p for p in store.list_projects() if p.id not in covered]


def high_risk_projects(store: SignalStore) -> list[Project]:
    """Distinct projects referenced by at least one open, high-severity risk."""
    flagged = {r.project_id for r in store.find_risks(status=RiskStatus.OPEN, severity=Severity.HIGH)}
    if not flagged:
        return []
    return [p for p in store.list_projects() if p.id in flagged]
