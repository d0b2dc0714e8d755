"""Initial attendance and leave ledger schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 09:00:00
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

attendance_status = postgresql.ENUM(
    "in_progress",
    "normal",
    "late",
    "early_leave",
    "late_early_leave",
    "absent",
    name="attendance_status",
    create_type=False,
)

leave_hold_status = postgresql.ENUM(
    "held",
    "finalized",
    "released",
    name="leave_hold_status",
    create_type=False,
)

leave_request_status = postgresql.ENUM(
    "pending",
    "approved",
    "rejected",
    "withdrawn",
    name="leave_request_status",
    create_type=False,
)

audit_actor_type = postgresql.ENUM(
    "USER",
    "ADMIN",
    "SYSTEM",
    name="audit_actor_type",
    create_type=False,
)


def _timestamps(*, with_updated: bool = True) -> list[sa.Column]:
    columns = [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    ]
    if with_updated:
        columns.append(
            sa.Column(
                "updated_at",
                sa.DateTime(timezone=True),
                nullable=False,
                server_default=sa.text("CURRENT_TIMESTAMP"),
            )
        )
    return columns


def upgrade() -> None:
    bind = op.get_bind()
    attendance_status.create(bind, checkfirst=True)
    leave_hold_status.create(bind, checkfirst=True)
    leave_request_status.create(bind, checkfirst=True)
    audit_actor_type.create(bind, checkfirst=True)

    op.create_table(
        "work_types",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("scheduled_start", sa.Time(), nullable=True),
        sa.Column("scheduled_end", sa.Time(), nullable=True),
        sa.Column("late_threshold_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("overtime_threshold_minutes", sa.Integer(), nullable=False, server_default=sa.text("480")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("overtime_threshold_minutes >= 0", name="ck_work_types_overtime_threshold"),
        sa.CheckConstraint("late_threshold_minutes >= 0", name="ck_work_types_late_threshold"),
    )

    op.create_table(
        "attendance_records",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("work_date", sa.Date(), nullable=False),
        sa.Column(
            "clock_records",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("work_type_id", sa.Integer(), nullable=True),
        sa.Column("actual_work_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("break_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("overtime_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("late_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("early_leave_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("status", attendance_status, nullable=False, server_default=sa.text("'in_progress'")),
        sa.Column(
            "flags",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("source_id", sa.Integer(), nullable=True),
        sa.Column("edit_reason", sa.String(length=1000), nullable=True),
        sa.Column("edited_by", sa.String(length=64), nullable=True),
        sa.Column("approved_by", sa.String(length=64), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["work_type_id"], ["work_types.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["source_id"], ["attendance_records.id"], ondelete="RESTRICT"),
        sa.UniqueConstraint("source_id", name="uq_attendance_records_source_id"),
        sa.CheckConstraint(
            "source_id IS NULL OR (edit_reason IS NOT NULL AND edited_by IS NOT NULL)",
            name="ck_attendance_records_correction_attribution",
        ),
        sa.CheckConstraint(
            "actual_work_minutes >= 0 AND overtime_minutes >= 0 AND break_minutes >= 0",
            name="ck_attendance_records_minutes_non_negative",
        ),
    )
    op.create_index("ix_attendance_records_user_id", "attendance_records", ["user_id"], unique=False)
    op.create_index("ix_attendance_records_work_date", "attendance_records", ["work_date"], unique=False)
    op.create_index(
        "uq_attendance_records_root_day",
        "attendance_records",
        ["user_id", "work_date"],
        unique=True,
        postgresql_where=sa.text("source_id IS NULL AND deleted_at IS NULL"),
    )

    op.create_table(
        "leave_ledger_entries",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("leave_type_id", sa.String(length=64), nullable=False),
        sa.Column("available_units", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("held_units", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("consumed_units", sa.Integer(), nullable=False, server_default=sa.text("0")),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "leave_type_id", name="uq_leave_ledger_entries_user_type"),
        sa.CheckConstraint("available_units >= 0", name="ck_leave_ledger_entries_available"),
        sa.CheckConstraint("held_units >= 0", name="ck_leave_ledger_entries_held"),
        sa.CheckConstraint("consumed_units >= 0", name="ck_leave_ledger_entries_consumed"),
    )

    op.create_table(
        "leave_holds",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("request_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("leave_type_id", sa.String(length=64), nullable=False),
        sa.Column("units_held", sa.Integer(), nullable=False),
        sa.Column("status", leave_hold_status, nullable=False, server_default=sa.text("'held'")),
        sa.Column("created_by", sa.String(length=64), nullable=True),
        sa.Column("resolved_by", sa.String(length=64), nullable=True),
        *_timestamps(with_updated=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("units_held > 0", name="ck_leave_holds_units_positive"),
    )
    op.create_index("ix_leave_holds_request_id", "leave_holds", ["request_id"], unique=True)
    op.create_index("ix_leave_holds_user_id", "leave_holds", ["user_id"], unique=False)
    op.create_index("ix_leave_holds_status", "leave_holds", ["status"], unique=False)

    op.create_table(
        "leave_grants",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("leave_type_id", sa.String(length=64), nullable=False),
        sa.Column("units", sa.Integer(), nullable=False),
        sa.Column("granted_on", sa.Date(), nullable=False),
        sa.Column("expires_on", sa.Date(), nullable=True),
        sa.Column("note", sa.String(length=1000), nullable=True),
        sa.Column("created_by", sa.String(length=64), nullable=False),
        *_timestamps(with_updated=False),
        sa.CheckConstraint("units > 0", name="ck_leave_grants_units_positive"),
    )
    op.create_index("ix_leave_grants_user_id", "leave_grants", ["user_id"], unique=False)

    op.create_table(
        "leave_requests",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("leave_type_id", sa.String(length=64), nullable=False),
        sa.Column("units", sa.Integer(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("status", leave_request_status, nullable=False, server_default=sa.text("'pending'")),
        sa.Column("approval_steps", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("current_step", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("decided_by", sa.String(length=64), nullable=True),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("note", sa.String(length=1000), nullable=True),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("units > 0", name="ck_leave_requests_units_positive"),
        sa.CheckConstraint("end_date >= start_date", name="ck_leave_requests_date_order"),
        sa.CheckConstraint("approval_steps >= 1", name="ck_leave_requests_steps"),
    )
    op.create_index("ix_leave_requests_user_id", "leave_requests", ["user_id"], unique=False)
    op.create_index("ix_leave_requests_status", "leave_requests", ["status"], unique=False)

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "ts_utc",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column("actor_type", audit_actor_type, nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("entity_type", sa.String(length=255), nullable=True),
        sa.Column("entity_id", sa.String(length=255), nullable=True),
        sa.Column("ip", sa.String(length=128), nullable=True),
        sa.Column("user_agent", sa.String(length=1024), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "details",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
    )
    op.create_index("ix_audit_logs_ts_utc", "audit_logs", ["ts_utc"], unique=False)

    op.create_table(
        "notification_jobs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=True),
        sa.Column("job_type", sa.String(length=100), nullable=False),
        sa.Column(
            "payload",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("scheduled_at_utc", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("idempotency_key", sa.String(length=255), nullable=False),
        *_timestamps(with_updated=False),
    )
    op.create_index("ix_notification_jobs_user_id", "notification_jobs", ["user_id"], unique=False)
    op.create_index("ix_notification_jobs_scheduled_at_utc", "notification_jobs", ["scheduled_at_utc"], unique=False)
    op.create_index("ix_notification_jobs_status", "notification_jobs", ["status"], unique=False)
    op.create_index("ix_notification_jobs_idempotency_key", "notification_jobs", ["idempotency_key"], unique=True)


def downgrade() -> None:
    op.drop_index("ix_notification_jobs_idempotency_key", table_name="notification_jobs")
    op.drop_index("ix_notification_jobs_status", table_name="notification_jobs")
    op.drop_index("ix_notification_jobs_scheduled_at_utc", table_name="notification_jobs")
    op.drop_index("ix_notification_jobs_user_id", table_name="notification_jobs")
    op.drop_table("notification_jobs")
    op.drop_index("ix_audit_logs_ts_utc", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_leave_requests_status", table_name="leave_requests")
    op.drop_index("ix_leave_requests_user_id", table_name="leave_requests")
    op.drop_table("leave_requests")
    op.drop_index("ix_leave_grants_user_id", table_name="leave_grants")
    op.drop_table("leave_grants")
    op.drop_index("ix_leave_holds_status", table_name="leave_holds")
    op.drop_index("ix_leave_holds_user_id", table_name="leave_holds")
    op.drop_index("ix_leave_holds_request_id", table_name="leave_holds")
    op.drop_table("leave_holds")
    op.drop_table("leave_ledger_entries")
    op.drop_index("uq_attendance_records_root_day", table_name="attendance_records")
    op.drop_index("ix_attendance_records_work_date", table_name="attendance_records")
    op.drop_index("ix_attendance_records_user_id", table_name="attendance_records")
    op.drop_table("attendance_records")
    op.drop_table("work_types")

    bind = op.get_bind()
    audit_actor_type.drop(bind, checkfirst=True)
    leave_request_status.drop(bind, checkfirst=True)
    leave_hold_status.drop(bind, checkfirst=True)
    attendance_status.drop(bind, checkfirst=True)
