from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from pulse import services
from pulse.auth import Capability, create_access_token
from pulse.config import get_settings
from pulse.db import init_db
from pulse.deps import current_user, db_session, period_clock, requires, signal_store
from pulse.errors import NotFoundError, UpstreamError, ValidationError
from pulse.models import Project, Role, User
from pulse.periods import PeriodClock
from pulse.schemas import (
    CheckinCreate,
    CheckinOut,
    DashboardItem,
    FeedbackCreate,
    FeedbackOut,
    HealthOut,
    LoginRequest,
    PendingCheckinOut,
    ProjectCreate,
    ProjectOut,
    ProjectUpdate,
    RiskCreate,
    RiskOut,
    TokenOut,
    UserCreate,
    UserOut,
    UsersCreated,
)
from pulse.store import SqlSignalStore

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Pulse",
    version="0.1.0",
    description=(
        "Project tracking API: weekly employee check-ins, client feedback, risks, "
        "and a derived per-project health score. Bearer-token authentication; "
        "access is gated by role (admin, employee, client)."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Auth", "description": "Login and current-user profile."},
        {"name": "Users", "description": "User administration."},
        {"name": "Projects", "description": "Create, browse, and update projects."},
        {"name": "Check-ins", "description": "Weekly employee check-ins and missing submissions."},
        {"name": "Feedback", "description": "Client satisfaction and communication ratings."},
        {"name": "Risks", "description": "Employee-raised risk records."},
        {"name": "Health", "description": "Derived project health scores and admin views."},
    ],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    log.info("%s %s", request.method, request.url.path)
    return await call_next(request)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
async def validation_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"detail": str(exc), "field": exc.field})


@app.exception_handler(UpstreamError)
async def upstream_handler(request: Request, exc: UpstreamError):
    return JSONResponse(status_code=503, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _visible_project(store: SqlSignalStore, user: User, project_id: int) -> Project:
    project = store.find_project(project_id)
    if project is not None and user.role != Role.ADMIN:
        if project.id not in {p.id for p in services.visible_projects(store, user)}:
            project = None
    if project is None:
        raise HTTPException(404, "Project not found")
    return project


# ---------------------------------------------------------------------------
# Routes: Auth & Users
# ---------------------------------------------------------------------------


@app.get("/api", tags=["Auth"], summary="Liveness check")
async def api_root():
    return {"message": "API is working!"}


@app.post("/api/auth/login", response_model=TokenOut, tags=["Auth"], summary="Exchange email/password for a token")
async def login(body: LoginRequest, session: Session = Depends(db_session)):
    user = services.authenticate(session, body.email, body.password)
    if user is None:
        raise HTTPException(400, "Invalid credentials")
    return {"token": create_access_token(user.id, user.role), "user": services.user_summary(user)}


@app.get("/api/auth/me", response_model=UserOut, tags=["Auth"], summary="Current user profile")
async def me(user: User = Depends(current_user)):
    return services.user_summary(user)


@app.post("/api/users", response_model=UsersCreated, status_code=201,
          tags=["Users"], summary="Create users in bulk (existing emails are skipped)")
async def create_users(
    body: list[UserCreate], session: Session = Depends(db_session),
    _: User = Depends(requires(Capability.MANAGE_USERS)),
):
    result = services.create_users(session, body)
    session.commit()
    return result


# ---------------------------------------------------------------------------
# Routes: Projects
# ---------------------------------------------------------------------------


@app.post("/api/projects", response_model=ProjectOut, status_code=201,
          tags=["Projects"], summary="Create a project")
async def create_project(
    body: ProjectCreate, session: Session = Depends(db_session),
    _: User = Depends(requires(Capability.MANAGE_PROJECTS)),
):
    proj = services.create_project(session, body)
    session.commit()
    return services.project_summary(proj)


@app.get("/api/projects", response_model=list[ProjectOut],
         tags=["Projects"], summary="List projects visible to the current user")
async def list_projects(
    store: SqlSignalStore = Depends(signal_store),
    user: User = Depends(requires(Capability.VIEW_PROJECTS)),
):
    return [services.project_summary(p) for p in services.visible_projects(store, user)]


@app.get("/api/projects/{project_id}", response_model=ProjectOut,
         tags=["Projects"], summary="Get a single project")
async def get_project(
    project_id: int, store: SqlSignalStore = Depends(signal_store),
    user: User = Depends(requires(Capability.VIEW_PROJECTS)),
):
    return services.project_summary(_visible_project(store, user, project_id))


@app.put("/api/projects/{project_id}", response_model=ProjectOut,
         tags=["Projects"], summary="Update project fields (partial update, null fields ignored)")
async def update_project(
    project_id: int, body: ProjectUpdate, session: Session = Depends(db_session),
    _: User = Depends(requires(Capability.MANAGE_PROJECTS)),
):
    proj = services.require_entity(session, Project, project_id, "Project")
    services.update_project(session, proj, body)
    session.commit()
    return services.project_summary(proj)


@app.delete("/api/projects/{project_id}", tags=["Projects"],
            summary="Delete a project with its check-ins, feedback and risks")
async def delete_project(
    project_id: int, session: Session = Depends(db_session),
    _: User = Depends(requires(Capability.MANAGE_PROJECTS)),
):
    proj = services.require_entity(session, Project, project_id, "Project")
    session.delete(proj)
    session.commit()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Check-ins
# ---------------------------------------------------------------------------


@app.post("/api/checkins", response_model=CheckinOut, status_code=201,
          tags=["Check-ins"], summary="Submit a check-in for the current period")
async def submit_checkin(
    body: CheckinCreate, session: Session = Depends(db_session),
    clock: PeriodClock = Depends(period_clock),
    user: User = Depends(requires(Capability.SUBMIT_CHECKIN)),
):
    checkin = services.submit_checkin(session, user, body, week=clock())
    session.commit()
    return services.checkin_summary(checkin)


@app.get("/api/projects/{project_id}/checkins", response_model=list[CheckinOut],
         tags=["Check-ins"], summary="List check-ins for a project")
async def list_checkins(
    project_id: int, store: SqlSignalStore = Depends(signal_store),
    user: User = Depends(requires(Capability.VIEW_PROJECTS)),
):
    _visible_project(store, user, project_id)
    return [services.checkin_summary(c) for c in store.find_checkins(project_id=project_id)]


@app.get("/api/employee/checkins/pending", response_model=list[PendingCheckinOut],
         tags=["Check-ins"], summary="Assigned projects still missing this period's check-in")
async def pending_checkins(
    store: SqlSignalStore = Depends(signal_store), clock: PeriodClock = Depends(period_clock),
    user: User = Depends(requires(Capability.SUBMIT_CHECKIN)),
):
    return services.pending_checkins(store, user.id, clock())


# ---------------------------------------------------------------------------
# Routes: Feedback
# ---------------------------------------------------------------------------


@app.post("/api/feedback", response_model=FeedbackOut, status_code=201,
          tags=["Feedback"], summary="Submit client feedback for a project")
async def submit_feedback(
    body: FeedbackCreate, session: Session = Depends(db_session),
    clock: PeriodClock = Depends(period_clock),
    user: User = Depends(requires(Capability.SUBMIT_FEEDBACK)),
):
    feedback = services.submit_feedback(session, user, body, week=clock())
    session.commit()
    return services.feedback_summary(feedback)


@app.get("/api/projects/{project_id}/feedback", response_model=list[FeedbackOut],
         tags=["Feedback"], summary="List feedback for a project, newest first")
async def list_feedback(
    project_id: int, store: SqlSignalStore = Depends(signal_store),
    user: User = Depends(requires(Capability.VIEW_PROJECTS)),
):
    _visible_project(store, user, project_id)
    return [services.feedback_summary(f) for f in store.find_feedback(project_id=project_id)]


# ---------------------------------------------------------------------------
# Routes: Risks
# ---------------------------------------------------------------------------


@app.post("/api/risks", response_model=RiskOut, status_code=201,
          tags=["Risks"], summary="Raise a risk against a project")
async def raise_risk(
    body: RiskCreate, session: Session = Depends(db_session),
    user: User = Depends(requires(Capability.RAISE_RISK)),
):
    risk = services.raise_risk(session, user, body)
    session.commit()
    return services.risk_summary(risk)


@app.get("/api/risks", response_model=list[RiskOut],
         tags=["Risks"], summary="List risks, newest first (employees see their own)")
async def list_risks(
    store: SqlSignalStore = Depends(signal_store),
    user: User = Depends(requires(Capability.VIEW_PROJECTS)),
):
    return [services.risk_summary(r) for r in services.visible_risks(store, user)]


# ---------------------------------------------------------------------------
# Routes: Health
# ---------------------------------------------------------------------------


@app.get("/api/projects/{project_id}/health", response_model=HealthOut,
         tags=["Health"], summary="Recompute and persist a project's health score")
async def project_health(
    project_id: int, store: SqlSignalStore = Depends(signal_store),
    _: User = Depends(requires(Capability.VIEW_HEALTH)),
):
    result = services.compute_health(store, project_id)
    return {"health_score": result.score, "status": result.status}


@app.get("/api/admin/projects", response_model=list[DashboardItem],
         tags=["Health"], summary="All projects with open-risk counts and health scores")
async def dashboard(
    store: SqlSignalStore = Depends(signal_store),
    _: User = Depends(requires(Capability.VIEW_DASHBOARD)),
):
    return services.compute_dashboard(store, get_settings().dashboard_policy)


@app.get("/api/admin/projects/missing-checkins", response_model=list[ProjectOut],
         tags=["Health"], summary="Projects without any check-in this period")
async def missing_checkins(
    store: SqlSignalStore = Depends(signal_store), clock: PeriodClock = Depends(period_clock),
    _: User = Depends(requires(Capability.VIEW_DASHBOARD)),
):
    return [services.project_summary(p) for p in services.missing_checkins_this_period(store, clock())]


@app.get("/api/admin/projects/high-risk", response_model=list[ProjectOut],
         tags=["Health"], summary="Projects with an open high-severity risk")
async def high_risk(
    store: SqlSignalStore = Depends(signal_store),
    _: User = Depends(requires(Capability.VIEW_DASHBOARD)),
):
    return [services.project_summary(p) for p in services.high_risk_projects(store)]


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn

    logging.basicConfig(
        level=get_settings().log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("pulse.app:app", host="127.0.0.1", port=5000, reload=True)


if __name__ == "__main__":
    main()
