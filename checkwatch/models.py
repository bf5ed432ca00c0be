from __future__ import annotations

import enum
import datetime as dt
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from checkwatch.db import Base

JsonDict = JSON().with_variant(JSONB(), "postgresql")


class Role(str, enum.Enum):
    ADMIN = "ADMIN"
    WHS = "WHS"
    SUPERVISOR = "SUPERVISOR"
    TEAM_LEAD = "TEAM_LEAD"
    WORKER = "WORKER"


class ReadinessLevel(str, enum.Enum):
    GREEN = "GREEN"
    YELLOW = "YELLOW"
    RED = "RED"


class EventType(str, enum.Enum):
    CHECK_IN_SUBMITTED = "CHECK_IN_SUBMITTED"
    MISSED_CHECK_IN_DETECTED = "MISSED_CHECK_IN_DETECTED"
    TEAM_TRANSFER_INITIATED = "TEAM_TRANSFER_INITIATED"
    TEAM_TRANSFER_COMPLETED = "TEAM_TRANSFER_COMPLETED"
    TEAM_TRANSFER_CANCELLED = "TEAM_TRANSFER_CANCELLED"


class NotificationType(str, enum.Enum):
    MISSED_CHECK_IN = "MISSED_CHECK_IN"
    TEAM_ALERT = "TEAM_ALERT"


class AuditActorType(str, enum.Enum):
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


class Company(Base):
    __tablename__ = "companies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    timezone: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default="Asia/Manila",
        server_default=text("'Asia/Manila'"),
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )

    teams: Mapped[list[Team]] = relationship(back_populates="company")
    persons: Mapped[list[Person]] = relationship(back_populates="company")


class Team(Base):
    __tablename__ = "teams"
    __table_args__ = (
        UniqueConstraint("company_id", "name", name="uq_teams_company_name"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    leader_id: Mapped[int] = mapped_column(
        ForeignKey("persons.id", ondelete="RESTRICT", use_alter=True, name="fk_teams_leader_id"),
        nullable=False,
        index=True,
    )
    supervisor_id: Mapped[int | None] = mapped_column(
        ForeignKey("persons.id", ondelete="SET NULL", use_alter=True, name="fk_teams_supervisor_id"),
        nullable=True,
    )
    work_days: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="1,2,3,4,5",
        server_default=text("'1,2,3,4,5'"),
    )
    check_in_start: Mapped[str] = mapped_column(
        String(5),
        nullable=False,
        default="06:00",
        server_default=text("'06:00'"),
    )
    check_in_end: Mapped[str] = mapped_column(
        String(5),
        nullable=False,
        default="10:00",
        server_default=text("'10:00'"),
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    company: Mapped[Company] = relationship(back_populates="teams")
    leader: Mapped[Person] = relationship(foreign_keys=[leader_id])
    supervisor: Mapped[Person | None] = relationship(foreign_keys=[supervisor_id])
    members: Mapped[list[Person]] = relationship(
        back_populates="team",
        foreign_keys="Person.team_id",
    )


class Person(Base):
    __tablename__ = "persons"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[Role] = mapped_column(
        Enum(Role, name="person_role"),
        nullable=False,
        default=Role.WORKER,
        server_default=text("'WORKER'"),
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    team_id: Mapped[int | None] = mapped_column(
        ForeignKey("teams.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    team_assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Schedule override; each field falls back to the team independently.
    work_days: Mapped[str | None] = mapped_column(String(20), nullable=True)
    check_in_start: Mapped[str | None] = mapped_column(String(5), nullable=True)
    check_in_end: Mapped[str | None] = mapped_column(String(5), nullable=True)
    # Pending transfer: all three are set together or all are null.
    effective_team_id: Mapped[int | None] = mapped_column(
        ForeignKey("teams.id", ondelete="SET NULL"),
        nullable=True,
    )
    effective_transfer_date: Mapped[date | None] = mapped_column(Date, nullable=True, index=True)
    transfer_initiated_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    company: Mapped[Company] = relationship(back_populates="persons")
    team: Mapped[Team | None] = relationship(back_populates="members", foreign_keys=[team_id])
    effective_team: Mapped[Team | None] = relationship(foreign_keys=[effective_team_id])

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Holiday(Base):
    __tablename__ = "holidays"
    __table_args__ = (
        UniqueConstraint("company_id", "date", name="uq_holidays_company_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    # Attribute shadows the `date` type inside the class body.
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    is_recurring: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )


class CheckIn(Base):
    __tablename__ = "check_ins"
    __table_args__ = (
        UniqueConstraint("person_id", "check_in_date", name="uq_check_ins_person_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    person_id: Mapped[int] = mapped_column(
        ForeignKey("persons.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    check_in_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    hours_slept: Mapped[float] = mapped_column(Float, nullable=False)
    sleep_quality: Mapped[int] = mapped_column(Integer, nullable=False)
    stress_level: Mapped[int] = mapped_column(Integer, nullable=False)
    physical_condition: Mapped[int] = mapped_column(Integer, nullable=False)
    pain_level: Mapped[int | None] = mapped_column(Integer, nullable=True)
    notes: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    readiness_score: Mapped[int] = mapped_column(Integer, nullable=False)
    readiness_level: Mapped[ReadinessLevel] = mapped_column(
        Enum(ReadinessLevel, name="readiness_level"),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )

    person: Mapped[Person] = relationship()


class MissedCheckIn(Base):
    __tablename__ = "missed_check_ins"
    __table_args__ = (
        UniqueConstraint("person_id", "missed_date", name="uq_missed_check_ins_person_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    person_id: Mapped[int] = mapped_column(
        ForeignKey("persons.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    team_id: Mapped[int] = mapped_column(
        ForeignKey("teams.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    missed_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    schedule_window: Mapped[str] = mapped_column(String(50), nullable=False)
    team_leader_id_at_miss: Mapped[int | None] = mapped_column(Integer, nullable=True)
    team_leader_name_at_miss: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # Point-in-time snapshot; written once at detection and never recomputed.
    worker_role_at_miss: Mapped[Role | None] = mapped_column(Enum(Role, name="person_role"), nullable=True)
    day_of_week: Mapped[int | None] = mapped_column(Integer, nullable=True)
    week_of_month: Mapped[int | None] = mapped_column(Integer, nullable=True)
    days_since_last_check_in: Mapped[int | None] = mapped_column(Integer, nullable=True)
    days_since_last_miss: Mapped[int | None] = mapped_column(Integer, nullable=True)
    check_in_streak_before: Mapped[int | None] = mapped_column(Integer, nullable=True)
    recent_readiness_avg: Mapped[float | None] = mapped_column(Float, nullable=True)
    misses_in_last_30d: Mapped[int | None] = mapped_column(Integer, nullable=True)
    misses_in_last_60d: Mapped[int | None] = mapped_column(Integer, nullable=True)
    misses_in_last_90d: Mapped[int | None] = mapped_column(Integer, nullable=True)
    baseline_completion_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    is_first_miss_in_30d: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    is_increasing_frequency: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )

    person: Mapped[Person] = relationship()
    team: Mapped[Team] = relationship()


class Event(Base):
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    person_id: Mapped[int | None] = mapped_column(
        ForeignKey("persons.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    event_type: Mapped[EventType] = mapped_column(Enum(EventType, name="event_type"), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(
        JsonDict,
        nullable=False,
        default=dict,
    )
    event_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    event_timezone: Mapped[str] = mapped_column(String(64), nullable=False)
    ingested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )


class NotificationJob(Base):
    __tablename__ = "notification_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    person_id: Mapped[int] = mapped_column(
        ForeignKey("persons.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    notification_type: Mapped[NotificationType] = mapped_column(
        Enum(NotificationType, name="notification_type"),
        nullable=False,
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="PENDING",
        server_default=text("'PENDING'"),
        index=True,
    )
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    ts_utc: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
        index=True,
    )
    actor_type: Mapped[AuditActorType] = mapped_column(
        Enum(AuditActorType, name="audit_actor_type"),
        nullable=False,
    )
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    details: Mapped[dict[str, Any]] = mapped_column(
        JsonDict,
        nullable=False,
        default=dict,
    )
