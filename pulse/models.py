from __future__ import annotations

import enum
from datetime import date, datetime

from sqlalchemy import (
    Boolean, Column, Date, DateTime, Enum, Float, ForeignKey, Integer, String, Table, Text, func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class Role(str, enum.Enum):
    ADMIN = "admin"
    EMPLOYEE = "employee"
    CLIENT = "client"


class ProjectStatus(str, enum.Enum):
    ON_TRACK = "On Track"
    AT_RISK = "At Risk"
    CRITICAL = "Critical"


class Severity(str, enum.Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class RiskStatus(str, enum.Enum):
    OPEN = "Open"
    MITIGATED = "Mitigated"
    CLOSED = "Closed"


def _enum_column(enum_cls: type[enum.Enum]) -> Enum:
    # Store the human-readable values ("On Track"), not the member names.
    return Enum(
        enum_cls, native_enum=False, length=20,
        values_callable=lambda members: [m.value for m in members],
    )


project_employees = Table(
    "project_employees",
    Base.metadata,
    Column("project_id", Integer, ForeignKey("projects.id", ondelete="CASCADE"), primary_key=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), default="")
    email: Mapped[str] = mapped_column(String(300), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(300), nullable=False)
    role: Mapped[Role] = mapped_column(_enum_column(Role), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    client_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id"), nullable=True)
    status: Mapped[ProjectStatus] = mapped_column(_enum_column(ProjectStatus), default=ProjectStatus.ON_TRACK)
    health_score: Mapped[int] = mapped_column(Integer, default=100)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    employees: Mapped[list[User]] = relationship("User", secondary=project_employees, lazy="selectin")
    checkins: Mapped[list[Checkin]] = relationship("Checkin", back_populates="project", cascade="all, delete-orphan")
    feedback: Mapped[list[Feedback]] = relationship("Feedback", back_populates="project", cascade="all, delete-orphan")
    risks: Mapped[list[Risk]] = relationship("Risk", back_populates="project", cascade="all, delete-orphan")

    @property
    def employee_ids(self) -> list[int]:
        return sorted(u.id for u in self.employees)


class Checkin(Base):
    __tablename__ = "checkins"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    employee_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    week: Mapped[str] = mapped_column(String(10), nullable=False, index=True)  # "2026-W42"
    progress_summary: Mapped[str] = mapped_column(Text, default="")
    blockers: Mapped[str] = mapped_column(Text, default="")
    confidence_level: Mapped[float] = mapped_column(Float, nullable=False)
    completion_percentage: Mapped[float] = mapped_column(Float, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    project: Mapped[Project] = relationship("Project", back_populates="checkins")


class Feedback(Base):
    __tablename__ = "feedback"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    client_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    week: Mapped[str] = mapped_column(String(10), default="")
    satisfaction_rating: Mapped[float] = mapped_column(Float, nullable=False)
    communication_rating: Mapped[float] = mapped_column(Float, nullable=False)
    comments: Mapped[str] = mapped_column(Text, default="")
    flagged_issue: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    project: Mapped[Project] = relationship("Project", back_populates="feedback")


class Risk(Base):
    __tablename__ = "risks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    employee_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    severity: Mapped[Severity] = mapped_column(_enum_column(Severity), nullable=False)
    mitigation_plan: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[RiskStatus] = mapped_column(_enum_column(RiskStatus), default=RiskStatus.OPEN)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    project: Mapped[Project] = relationship("Project", back_populates="risks")
