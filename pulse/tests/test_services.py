"""Service-layer tests against an in-memory SQLite signal store."""
from __future__ import annotations

from datetime import date, datetime
from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError as SchemaError
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from pulse import services
from pulse.errors import NotFoundError, UpstreamError, ValidationError
from pulse.models import (
    Base, Checkin, Feedback, Project, ProjectStatus, Risk, RiskStatus, Role, Severity, User,
)
from pulse.schemas import CheckinCreate, FeedbackCreate, ProjectCreate, ProjectUpdate, RiskCreate, UserCreate
from pulse.store import SqlSignalStore

WEEK = "2026-W42"
LAST_WEEK = "2026-W41"

# ---------------------------------------------------------------------------
# Fixtures: in-memory SQLite database
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session(engine):
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = SessionLocal()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def store(session: Session) -> SqlSignalStore:
    return SqlSignalStore(session)


@pytest.fixture()
def people(session: Session) -> dict[str, User]:
    users = {
        "admin": User(name="Admin", email="admin@example.com", password_hash="x", role=Role.ADMIN),
        "alice": User(name="Alice", email="alice@example.com", password_hash="x", role=Role.EMPLOYEE),
        "bob": User(name="Bob", email="bob@example.com", password_hash="x", role=Role.EMPLOYEE),
        "acme": User(name="Acme", email="acme@example.com", password_hash="x", role=Role.CLIENT),
    }
    session.add_all(users.values())
    session.flush()
    return users


@pytest.fixture()
def projects(session: Session, people) -> list[Project]:
    alice, bob, acme = people["alice"], people["bob"], people["acme"]
    projs = [
        Project(name="Apollo", client_id=acme.id, employees=[alice, bob]),
        Project(name="Borealis", client_id=acme.id, employees=[alice]),
        Project(name="Cygnus", employees=[bob]),
    ]
    session.add_all(projs)
    session.flush()
    return projs


def add_checkin(session, project, employee, week=WEEK, confidence=4, completion=50):
    c = Checkin(project_id=project.id, employee_id=employee.id, week=week,
                confidence_level=confidence, completion_percentage=completion)
    session.add(c)
    session.flush()
    return c


def add_feedback(session, project, client, satisfaction=5, flagged=False):
    f = Feedback(project_id=project.id, client_id=client.id, week=WEEK,
                 satisfaction_rating=satisfaction, communication_rating=4, flagged_issue=flagged)
    session.add(f)
    session.flush()
    return f


def add_risk(session, project, employee, severity=Severity.HIGH, status=RiskStatus.OPEN):
    r = Risk(project_id=project.id, employee_id=employee.id, title="Vendor delay",
             severity=severity, status=status)
    session.add(r)
    session.flush()
    return r


# =========================================================================
# compute_health
# =========================================================================


class TestComputeHealth:
    def test_not_found(self, store):
        with pytest.raises(NotFoundError, match="Project 999 not found"):
            services.compute_health(store, 999)

    def test_defaults_persisted(self, session, store, projects):
        apollo = projects[0]
        when = datetime(2026, 10, 18, 9, 30)
        result = services.compute_health(store, apollo.id, now=when)
        assert result.score == 80
        assert result.status is ProjectStatus.ON_TRACK
        session.refresh(apollo)
        assert apollo.health_score == 80
        assert apollo.status is ProjectStatus.ON_TRACK
        assert apollo.updated_at == when

    def test_uses_all_history(self, session, store, people, projects):
        apollo = projects[0]
        add_feedback(session, apollo, people["acme"], satisfaction=4)
        add_feedback(session, apollo, people["acme"], satisfaction=5)
        add_checkin(session, apollo, people["alice"], week=LAST_WEEK, confidence=3, completion=50)
        add_checkin(session, apollo, people["bob"], week=WEEK, confidence=5, completion=70)
        result = services.compute_health(store, apollo.id)
        assert result.score == 80
        assert result.status is ProjectStatus.ON_TRACK

    def test_only_own_project_signals(self, session, store, people, projects):
        apollo, borealis = projects[0], projects[1]
        add_feedback(session, borealis, people["acme"], satisfaction=1, flagged=True)
        assert services.compute_health(store, apollo.id).score == 80

    def test_flagged_feedback_penalty(self, session, store, people, projects):
        apollo = projects[0]
        add_feedback(session, apollo, people["acme"], flagged=True)
        add_feedback(session, apollo, people["acme"], flagged=True)
        result = services.compute_health(store, apollo.id)
        assert result.score == 70
        assert result.status is ProjectStatus.AT_RISK

    def test_idempotent(self, session, store, people, projects):
        apollo = projects[0]
        add_checkin(session, apollo, people["alice"], confidence=2, completion=10)
        first = services.compute_health(store, apollo.id)
        second = services.compute_health(store, apollo.id)
        assert first == second

    def test_upstream_failure_propagates(self, session, projects):
        broken = MagicMock(spec=Session)
        broken.execute.side_effect = OperationalError("SELECT", {}, Exception("disk I/O error"))
        with pytest.raises(UpstreamError):
            services.compute_health(SqlSignalStore(broken), projects[0].id)


# =========================================================================
# compute_dashboard
# =========================================================================


class TestComputeDashboard:
    def test_annotates_every_project(self, session, store, people, projects):
        apollo, borealis, cygnus = projects
        add_risk(session, apollo, people["alice"])
        add_risk(session, apollo, people["bob"], severity=Severity.LOW)
        add_risk(session, apollo, people["bob"], status=RiskStatus.CLOSED)
        add_checkin(session, borealis, people["alice"], confidence=4)
        add_feedback(session, borealis, people["acme"], satisfaction=4)

        rows = {row["project"]["name"]: row for row in services.compute_dashboard(store)}
        assert set(rows) == {"Apollo", "Borealis", "Cygnus"}
        assert rows["Apollo"]["open_risks_count"] == 2
        assert rows["Apollo"]["health_score"] == 90
        assert rows["Borealis"]["open_risks_count"] == 0
        assert rows["Borealis"]["health_score"] == 64
        assert rows["Cygnus"]["health_score"] == 100

    def test_does_not_persist(self, session, store, people, projects):
        apollo = projects[0]
        add_risk(session, apollo, people["alice"])
        services.compute_dashboard(store)
        session.refresh(apollo)
        assert apollo.health_score == 100
        assert apollo.status is ProjectStatus.ON_TRACK

    def test_absolute_policy_option(self, session, store, projects):
        from pulse.health import HealthPolicy
        rows = services.compute_dashboard(store, HealthPolicy.ABSOLUTE)
        assert {row["health_score"] for row in rows} == {80}

    def test_more_high_risks_never_raise_score(self, session, store, people, projects):
        apollo = projects[0]
        add_checkin(session, apollo, people["alice"], confidence=3)
        scores = []
        for _ in range(4):
            add_risk(session, apollo, people["alice"])
            scores.append(services.compute_dashboard(store)[0]["health_score"])
        assert scores == sorted(scores, reverse=True)


# =========================================================================
# Missing-submission detection
# =========================================================================


class TestPendingCheckins:
    def test_lists_assigned_projects_without_checkin(self, session, store, people, projects):
        apollo, borealis, _ = projects
        add_checkin(session, apollo, people["alice"])
        pending = services.pending_checkins(store, people["alice"].id, WEEK)
        assert pending == [{"project_id": borealis.id, "project_name": "Borealis", "week": WEEK}]

    def test_other_employee_checkin_does_not_count(self, session, store, people, projects):
        apollo = projects[0]
        add_checkin(session, apollo, people["bob"])
        pending = services.pending_checkins(store, people["alice"].id, WEEK)
        assert [p["project_name"] for p in pending] == ["Apollo", "Borealis"]

    def test_previous_period_does_not_count(self, session, store, people, projects):
        add_checkin(session, projects[0], people["alice"], week=LAST_WEEK)
        add_checkin(session, projects[1], people["alice"], week=LAST_WEEK)
        assert len(services.pending_checkins(store, people["alice"].id, WEEK)) == 2

    def test_unassigned_employee_has_nothing_pending(self, session, store, projects):
        assert services.pending_checkins(store, 12345, WEEK) == []

    def test_defaults_to_current_period(self, session, store, people, projects, monkeypatch):
        monkeypatch.setattr(services, "current_period", lambda: "1999-W1")
        pending = services.pending_checkins(store, people["bob"].id)
        assert {p["week"] for p in pending} == {"1999-W1"}


class TestMissingCheckins:
    def test_three_projects_one_covered(self, session, store, people, projects):
        apollo, borealis, cygnus = projects
        add_checkin(session, apollo, people["bob"])
        missing = services.missing_checkins_this_period(store, WEEK)
        assert [p.id for p in missing] == [borealis.id, cygnus.id]

    def test_old_checkins_do_not_cover(self, session, store, people, projects):
        for p in projects:
            add_checkin(session, p, people["alice"], week=LAST_WEEK)
        assert len(services.missing_checkins_this_period(store, WEEK)) == 3


# =========================================================================
# High-risk finder
# =========================================================================


class TestHighRiskProjects:
    def test_only_open_high(self, session, store, people, projects):
        apollo, borealis, cygnus = projects
        add_risk(session, apollo, people["alice"])
        add_risk(session, borealis, people["alice"], severity=Severity.LOW)
        add_risk(session, cygnus, people["bob"], status=RiskStatus.MITIGATED)
        assert [p.id for p in services.high_risk_projects(store)] == [apollo.id]

    def test_distinct(self, session, store, people, projects):
        apollo = projects[0]
        add_risk(session, apollo, people["alice"])
        add_risk(session, apollo, people["bob"])
        assert len(services.high_risk_projects(store)) == 1

    def test_none(self, store, projects):
        assert services.high_risk_projects(store) == []


# =========================================================================
# Thin CRUD helpers
# =========================================================================


class TestCreateUsers:
    def test_skips_existing_and_duplicates(self, session, people):
        result = services.create_users(session, [
            UserCreate(name="Carol", email="Carol@Example.com", password="pw", role=Role.EMPLOYEE),
            UserCreate(email="alice@example.com", password="pw", role=Role.EMPLOYEE),
            UserCreate(email="carol@example.com", password="pw", role=Role.EMPLOYEE),
        ])
        session.commit()
        assert result == {
            "created": ["carol@example.com"],
            "skipped": ["alice@example.com", "carol@example.com"],
        }

    def test_authenticate(self, session):
        services.create_users(session, [UserCreate(email="dan@example.com", password="s3cret", role=Role.CLIENT)])
        session.commit()
        assert services.authenticate(session, "DAN@example.com", "s3cret").role is Role.CLIENT
        assert services.authenticate(session, "dan@example.com", "wrong") is None
        assert services.authenticate(session, "nobody@example.com", "s3cret") is None


class TestProjects:
    def test_create_with_assignments(self, session, people):
        proj = services.create_project(session, ProjectCreate(
            name="Delta", client_id=people["acme"].id,
            employee_ids=[people["alice"].id, people["bob"].id, people["alice"].id],
        ))
        session.commit()
        assert proj.employee_ids == sorted([people["alice"].id, people["bob"].id])
        assert proj.health_score == 100
        assert proj.status is ProjectStatus.ON_TRACK

    def test_create_rejects_wrong_role(self, session, people):
        with pytest.raises(ValidationError):
            services.create_project(session, ProjectCreate(name="X", employee_ids=[people["acme"].id]))

    def test_create_rejects_unknown_client(self, session, people):
        with pytest.raises(NotFoundError, match="Client 404"):
            services.create_project(session, ProjectCreate(name="X", client_id=404))

    def test_update_partial(self, session, people, projects):
        cygnus = projects[2]
        services.update_project(session, cygnus, ProjectUpdate(
            description="Now with scope", employee_ids=[people["alice"].id],
        ))
        session.commit()
        assert cygnus.name == "Cygnus"
        assert cygnus.description == "Now with scope"
        assert cygnus.employee_ids == [people["alice"].id]

    def test_update_rejects_end_before_stored_start(self, session, projects):
        apollo = projects[0]
        apollo.start_date = date(2026, 6, 1)
        with pytest.raises(ValidationError, match="end_date") as exc_info:
            services.update_project(session, apollo, ProjectUpdate(end_date=date(2026, 1, 1)))
        assert exc_info.value.field == "end_date"
        assert apollo.end_date is None

    def test_update_rejects_start_after_stored_end(self, session, projects):
        apollo = projects[0]
        apollo.end_date = date(2026, 3, 1)
        with pytest.raises(ValidationError):
            services.update_project(session, apollo, ProjectUpdate(start_date=date(2026, 4, 1)))
        assert apollo.start_date is None

    def test_update_moves_both_dates(self, session, projects):
        apollo = projects[0]
        apollo.start_date, apollo.end_date = date(2026, 1, 1), date(2026, 2, 1)
        services.update_project(session, apollo, ProjectUpdate(
            start_date=date(2026, 5, 1), end_date=date(2026, 6, 1),
        ))
        assert (apollo.start_date, apollo.end_date) == (date(2026, 5, 1), date(2026, 6, 1))

    def test_update_rejects_empty_name(self):
        with pytest.raises(SchemaError):
            ProjectUpdate(name="")

    def test_visible_projects_by_role(self, store, people, projects):
        names = lambda user: [p.name for p in services.visible_projects(store, user)]  # noqa: E731
        assert names(people["admin"]) == ["Apollo", "Borealis", "Cygnus"]
        assert names(people["alice"]) == ["Apollo", "Borealis"]
        assert names(people["bob"]) == ["Apollo", "Cygnus"]
        assert names(people["acme"]) == ["Apollo", "Borealis"]


class TestSignals:
    def test_checkin_stamped_with_week(self, session, people, projects):
        c = services.submit_checkin(session, people["alice"], CheckinCreate(
            project_id=projects[0].id, confidence_level=4, completion_percentage=40,
        ), week=WEEK)
        assert c.week == WEEK
        assert c.employee_id == people["alice"].id

    def test_checkin_unknown_project(self, session, people):
        with pytest.raises(NotFoundError):
            services.submit_checkin(session, people["alice"], CheckinCreate(
                project_id=999, confidence_level=4, completion_percentage=40,
            ))

    def test_feedback_unknown_project(self, session, people):
        with pytest.raises(NotFoundError):
            services.submit_feedback(session, people["acme"], FeedbackCreate(
                project_id=999, satisfaction_rating=4, communication_rating=4,
            ))

    def test_risk_defaults_open(self, session, people, projects):
        r = services.raise_risk(session, people["bob"], RiskCreate(
            project_id=projects[2].id, title="Scope creep", severity=Severity.MEDIUM,
        ))
        assert r.status is RiskStatus.OPEN

    def test_employee_sees_own_risks(self, session, store, people, projects):
        add_risk(session, projects[0], people["alice"])
        add_risk(session, projects[0], people["bob"])
        assert len(services.visible_risks(store, people["alice"])) == 1
        assert len(services.visible_risks(store, people["admin"])) == 2
