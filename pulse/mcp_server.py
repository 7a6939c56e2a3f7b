from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, contextmanager

from mcp.server.fastmcp import FastMCP

from pulse import services
from pulse.config import get_settings
from pulse.db import get_session, init_db
from pulse.errors import PulseError
from pulse.periods import current_period, validate_period
from pulse.store import SqlSignalStore

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def pulse_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "Pulse",
    instructions=(
        "Pulse tracks projects through weekly employee check-ins, client feedback, "
        "and risks. Start with get_dashboard() for an overview, then "
        "get_project_health(id) to recompute one project's score."
    ),
    lifespan=pulse_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@contextmanager
def _store():
    session = get_session()
    try:
        yield SqlSignalStore(session)
    finally:
        session.close()


def _period(period: str | None) -> str:
    return validate_period(period) if period else current_period()


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("pulse://overview")
def pulse_overview() -> str:
    """Overview of Pulse: data model, health scoring, and statuses."""
    return json.dumps({
        "system": "Pulse — project health tracking",
        "data_model": {
            "project": "Client engagement with assigned employees; carries a cached health score and status.",
            "checkin": "Weekly employee report: confidence (1-5) and completion percentage (0-100).",
            "feedback": "Client rating of satisfaction and communication (1-5), optionally flagging an issue.",
            "risk": "Employee-raised issue with severity (Low/Medium/High) and status (Open/Mitigated/Closed).",
        },
        "scoring": {
            "absolute": "satisfaction*8 + confidence*8 + completion*0.2 - 5 per flagged feedback; persisted.",
            "multiplicative": "(100 - 10 per open high risk) * confidence/5 * satisfaction/5; dashboard only.",
        },
        "statuses": {"Critical": "score < 60", "At Risk": "60 <= score < 80", "On Track": "score >= 80"},
        "period_format": "<iso-year>-W<iso-week>, e.g. 2026-W42",
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool()
def get_project_health(project_id: int) -> dict:
    """Recompute a project's health score from all its check-ins and feedback, and store it."""
    with _store() as store:
        try:
            result = services.compute_health(store, project_id)
        except PulseError as exc:
            return {"error": str(exc)}
        return {"project_id": project_id, "health_score": result.score, "status": result.status.value}


@mcp.tool()
def get_dashboard() -> list[dict] | dict:
    """List every project with its open-risk count and dashboard health score."""
    with _store() as store:
        try:
            return services.compute_dashboard(store, get_settings().dashboard_policy)
        except PulseError as exc:
            return {"error": str(exc)}


@mcp.tool()
def list_missing_checkins(period: str | None = None) -> list[dict] | dict:
    """Projects with no check-in from anyone in the given period (default: current week).

    Args:
        period: Period label such as "2026-W42".
    """
    try:
        week = _period(period)
    except ValueError as exc:
        return {"error": str(exc)}
    with _store() as store:
        try:
            return [services.project_summary(p) for p in services.missing_checkins_this_period(store, week)]
        except PulseError as exc:
            return {"error": str(exc)}


@mcp.tool()
def list_pending_checkins(employee_id: int, period: str | None = None) -> list[dict] | dict:
    """Projects assigned to an employee that still lack their check-in for the period."""
    try:
        week = _period(period)
    except ValueError as exc:
        return {"error": str(exc)}
    with _store() as store:
        try:
            return services.pending_checkins(store, employee_id, week)
        except PulseError as exc:
            return {"error": str(exc)}


@mcp.tool()
def list_high_risk_projects() -> list[dict] | dict:
    """Projects with at least one open, high-severity risk."""
    with _store() as store:
        try:
            return [services.project_summary(p) for p in services.high_risk_projects(store)]
        except PulseError as exc:
            return {"error": str(exc)}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Pulse MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
