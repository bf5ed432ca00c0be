"""Initial check-in attendance schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-16 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

person_role = postgresql.ENUM(
    "ADMIN",
    "WHS",
    "SUPERVISOR",
    "TEAM_LEAD",
    "WORKER",
    name="person_role",
    create_type=False,
)
readiness_level = postgresql.ENUM(
    "GREEN",
    "YELLOW",
    "RED",
    name="readiness_level",
    create_type=False,
)
event_type = postgresql.ENUM(
    "CHECK_IN_SUBMITTED",
    "MISSED_CHECK_IN_DETECTED",
    "TEAM_TRANSFER_INITIATED",
    "TEAM_TRANSFER_COMPLETED",
    "TEAM_TRANSFER_CANCELLED",
    name="event_type",
    create_type=False,
)
notification_type = postgresql.ENUM(
    "MISSED_CHECK_IN",
    "TEAM_ALERT",
    name="notification_type",
    create_type=False,
)
audit_actor_type = postgresql.ENUM(
    "ADMIN",
    "SYSTEM",
    name="audit_actor_type",
    create_type=False,
)


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("CURRENT_TIMESTAMP"),
    )


def upgrade() -> None:
    bind = op.get_bind()
    person_role.create(bind, checkfirst=True)
    readiness_level.create(bind, checkfirst=True)
    event_type.create(bind, checkfirst=True)
    notification_type.create(bind, checkfirst=True)
    audit_actor_type.create(bind, checkfirst=True)

    op.create_table(
        "companies",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("timezone", sa.String(length=64), nullable=False, server_default=sa.text("'Asia/Manila'")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _created_at(),
    )

    # Teams and persons reference each other; the team -> leader keys are added after both exist.
    op.create_table(
        "teams",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.String(length=1000), nullable=True),
        sa.Column("leader_id", sa.Integer(), nullable=False),
        sa.Column("supervisor_id", sa.Integer(), nullable=True),
        sa.Column("work_days", sa.String(length=20), nullable=False, server_default=sa.text("'1,2,3,4,5'")),
        sa.Column("check_in_start", sa.String(length=5), nullable=False, server_default=sa.text("'06:00'")),
        sa.Column("check_in_end", sa.String(length=5), nullable=False, server_default=sa.text("'10:00'")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("company_id", "name", name="uq_teams_company_name"),
    )
    op.create_index("ix_teams_company_id", "teams", ["company_id"])
    op.create_index("ix_teams_leader_id", "teams", ["leader_id"])

    op.create_table(
        "persons",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("first_name", sa.String(length=100), nullable=False),
        sa.Column("last_name", sa.String(length=100), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("role", person_role, nullable=False, server_default=sa.text("'WORKER'")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("team_id", sa.Integer(), nullable=True),
        sa.Column("team_assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("work_days", sa.String(length=20), nullable=True),
        sa.Column("check_in_start", sa.String(length=5), nullable=True),
        sa.Column("check_in_end", sa.String(length=5), nullable=True),
        sa.Column("effective_team_id", sa.Integer(), nullable=True),
        sa.Column("effective_transfer_date", sa.Date(), nullable=True),
        sa.Column("transfer_initiated_by", sa.Integer(), nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["team_id"], ["teams.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["effective_team_id"], ["teams.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_persons_company_id", "persons", ["company_id"])
    op.create_index("ix_persons_team_id", "persons", ["team_id"])
    op.create_index("ix_persons_effective_transfer_date", "persons", ["effective_transfer_date"])

    op.create_foreign_key(
        "fk_teams_leader_id",
        "teams",
        "persons",
        ["leader_id"],
        ["id"],
        ondelete="RESTRICT",
    )
    op.create_foreign_key(
        "fk_teams_supervisor_id",
        "teams",
        "persons",
        ["supervisor_id"],
        ["id"],
        ondelete="SET NULL",
    )

    op.create_table(
        "holidays",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("is_recurring", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        _created_at(),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("company_id", "date", name="uq_holidays_company_date"),
    )
    op.create_index("ix_holidays_company_id", "holidays", ["company_id"])

    op.create_table(
        "check_ins",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("person_id", sa.Integer(), nullable=False),
        sa.Column("check_in_date", sa.Date(), nullable=False),
        sa.Column("hours_slept", sa.Float(), nullable=False),
        sa.Column("sleep_quality", sa.Integer(), nullable=False),
        sa.Column("stress_level", sa.Integer(), nullable=False),
        sa.Column("physical_condition", sa.Integer(), nullable=False),
        sa.Column("pain_level", sa.Integer(), nullable=True),
        sa.Column("notes", sa.String(length=1000), nullable=True),
        sa.Column("readiness_score", sa.Integer(), nullable=False),
        sa.Column("readiness_level", readiness_level, nullable=False),
        _created_at(),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["person_id"], ["persons.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("person_id", "check_in_date", name="uq_check_ins_person_date"),
    )
    op.create_index("ix_check_ins_company_id", "check_ins", ["company_id"])
    op.create_index("ix_check_ins_person_id", "check_ins", ["person_id"])
    op.create_index("ix_check_ins_check_in_date", "check_ins", ["check_in_date"])

    op.create_table(
        "missed_check_ins",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("person_id", sa.Integer(), nullable=False),
        sa.Column("team_id", sa.Integer(), nullable=False),
        sa.Column("missed_date", sa.Date(), nullable=False),
        sa.Column("schedule_window", sa.String(length=50), nullable=False),
        sa.Column("team_leader_id_at_miss", sa.Integer(), nullable=True),
        sa.Column("team_leader_name_at_miss", sa.String(length=255), nullable=True),
        sa.Column("worker_role_at_miss", person_role, nullable=True),
        sa.Column("day_of_week", sa.Integer(), nullable=True),
        sa.Column("week_of_month", sa.Integer(), nullable=True),
        sa.Column("days_since_last_check_in", sa.Integer(), nullable=True),
        sa.Column("days_since_last_miss", sa.Integer(), nullable=True),
        sa.Column("check_in_streak_before", sa.Integer(), nullable=True),
        sa.Column("recent_readiness_avg", sa.Float(), nullable=True),
        sa.Column("misses_in_last_30d", sa.Integer(), nullable=True),
        sa.Column("misses_in_last_60d", sa.Integer(), nullable=True),
        sa.Column("misses_in_last_90d", sa.Integer(), nullable=True),
        sa.Column("baseline_completion_rate", sa.Float(), nullable=True),
        sa.Column("is_first_miss_in_30d", sa.Boolean(), nullable=True),
        sa.Column("is_increasing_frequency", sa.Boolean(), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["person_id"], ["persons.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["team_id"], ["teams.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("person_id", "missed_date", name="uq_missed_check_ins_person_date"),
    )
    op.create_index("ix_missed_check_ins_company_id", "missed_check_ins", ["company_id"])
    op.create_index("ix_missed_check_ins_person_id", "missed_check_ins", ["person_id"])
    op.create_index("ix_missed_check_ins_team_id", "missed_check_ins", ["team_id"])
    op.create_index("ix_missed_check_ins_missed_date", "missed_check_ins", ["missed_date"])

    op.create_table(
        "events",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("person_id", sa.Integer(), nullable=True),
        sa.Column("event_type", event_type, nullable=False),
        sa.Column("entity_type", sa.String(length=100), nullable=False),
        sa.Column("entity_id", sa.String(length=100), nullable=True),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("event_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("event_timezone", sa.String(length=64), nullable=False),
        sa.Column("ingested_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["person_id"], ["persons.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_events_company_id", "events", ["company_id"])
    op.create_index("ix_events_person_id", "events", ["person_id"])
    op.create_index("ix_events_event_time", "events", ["event_time"])

    op.create_table(
        "notification_jobs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("person_id", sa.Integer(), nullable=False),
        sa.Column("notification_type", notification_type, nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("idempotency_key", sa.String(length=255), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["person_id"], ["persons.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("idempotency_key", name="uq_notification_jobs_idempotency_key"),
    )
    op.create_index("ix_notification_jobs_company_id", "notification_jobs", ["company_id"])
    op.create_index("ix_notification_jobs_person_id", "notification_jobs", ["person_id"])
    op.create_index("ix_notification_jobs_status", "notification_jobs", ["status"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=True),
        sa.Column("ts_utc", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("actor_type", audit_actor_type, nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("entity_type", sa.String(length=255), nullable=True),
        sa.Column("entity_id", sa.String(length=255), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("details", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    )
    op.create_index("ix_audit_logs_company_id", "audit_logs", ["company_id"])
    op.create_index("ix_audit_logs_ts_utc", "audit_logs", ["ts_utc"])


def downgrade() -> None:
    op.drop_index("ix_audit_logs_ts_utc", table_name="audit_logs")
    op.drop_index("ix_audit_logs_company_id", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_table("notification_jobs")
    op.drop_table("events")
    op.drop_table("missed_check_ins")
    op.drop_table("check_ins")
    op.drop_table("holidays")
    op.drop_constraint("fk_teams_supervisor_id", "teams", type_="foreignkey")
    op.drop_constraint("fk_teams_leader_id", "teams", type_="foreignkey")
    op.drop_table("persons")
    op.drop_table("teams")
    op.drop_table("companies")

    bind = op.get_bind()
    audit_actor_type.drop(bind, checkfirst=True)
    notification_type.drop(bind, checkfirst=True)
    event_type.drop(bind, checkfirst=True)
    readiness_level.drop(bind, checkfirst=True)
    person_role.drop(bind, checkfirst=True)
