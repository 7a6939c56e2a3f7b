"""Pydantic request/response schemas for the Pulse API."""
from __future__ import annotations

from datetime import date

from pydantic import BaseModel, Field, field_validator, model_validator

from pulse.models import ProjectStatus, RiskStatus, Role, Severity


class LoginRequest(BaseModel):
    email: str
    password: str


class UserOut(BaseModel):
    id: int
    name: str
    email: str
    role: Role


class TokenOut(BaseModel):
    token: str
    user: UserOut


class UserCreate(BaseModel):
    name: str = ""
    email: str
    password: str = Field(min_length=1)
    role: Role

    @field_validator("email")
    @classmethod
    def email_must_look_valid(cls, v: str) -> str:
        v = v.strip().lower()
        if "@" not in v:
            raise ValueError("email must contain '@'")
        return v


class UsersCreated(BaseModel):
    created: list[str]
    skipped: list[str]


class ProjectCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    start_date: date | None = None
    end_date: date | None = None
    client_id: int | None = None
    employee_ids: list[int] = []

    @model_validator(mode="after")
    def dates_in_order(self) -> ProjectCreate:
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class ProjectUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    client_id: int | None = None
    employee_ids: list[int] | None = None


class ProjectOut(BaseModel):
    id: int
    name: str
    description: str
    start_date: date | None = None
    end_date: date | None = None
    client_id: int | None = None
    employee_ids: list[int] = []
    status: ProjectStatus
    health_score: int
    created_at: str | None = None
    updated_at: str | None = None


class CheckinCreate(BaseModel):
    project_id: int
    progress_summary: str = ""
    blockers: str = ""
    confidence_level: float = Field(ge=1, le=5)
    completion_percentage: float = Field(ge=0, le=100)


class CheckinOut(BaseModel):
    id: int
    project_id: int
    employee_id: int
    week: str
    progress_summary: str
    blockers: str
    confidence_level: float
    completion_percentage: float
    created_at: str | None = None


class PendingCheckinOut(BaseModel):
    project_id: int
    project_name: str
    week: str


class FeedbackCreate(BaseModel):
    project_id: int
    satisfaction_rating: float = Field(ge=1, le=5)
    communication_rating: float = Field(ge=1, le=5)
    comments: str = ""
    flagged_issue: bool = False


class FeedbackOut(BaseModel):
    id: int
    project_id: int
    client_id: int
    week: str
    satisfaction_rating: float
    communication_rating: float
    comments: str
    flagged_issue: bool
    created_at: str | None = None


class RiskCreate(BaseModel):
    project_id: int
    title: str = Field(min_length=1)
    severity: Severity
    mitigation_plan: str = ""
    status: RiskStatus = RiskStatus.OPEN


class RiskOut(BaseModel):
    id: int
    project_id: int
    employee_id: int
    title: str
    severity: Severity
    mitigation_plan: str
    status: RiskStatus
    created_at: str | None = None


class HealthOut(BaseModel):
    health_score: int
    status: ProjectStatus


class DashboardItem(BaseModel):
    project: ProjectOut
    open_risks_count: int
    health_score: int
