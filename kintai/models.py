from __future__ import annotations

import enum
from datetime import date, datetime, time, timezone
from typing import Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from kintai.db import Base, JSONType


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class AttendanceStatus(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    NORMAL = "normal"
    LATE = "late"
    EARLY_LEAVE = "early_leave"
    LATE_EARLY_LEAVE = "late_early_leave"
    ABSENT = "absent"


class LeaveHoldStatus(str, enum.Enum):
    HELD = "held"
    FINALIZED = "finalized"
    RELEASED = "released"


class LeaveRequestStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


class AuditActorType(str, enum.Enum):
    USER = "USER"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


class WorkType(Base):
    __tablename__ = "work_types"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    scheduled_start: Mapped[time | None] = mapped_column(Time, nullable=True)
    scheduled_end: Mapped[time | None] = mapped_column(Time, nullable=True)
    late_threshold_minutes: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default=text("0"),
    )
    overtime_threshold_minutes: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=480,
        server_default=text("480"),
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("overtime_threshold_minutes >= 0", name="ck_work_types_overtime_threshold"),
        CheckConstraint("late_threshold_minutes >= 0", name="ck_work_types_late_threshold"),
    )


class AttendanceRecord(Base):
    __tablename__ = "attendance_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    work_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    clock_records: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    work_type_id: Mapped[int | None] = mapped_column(
        ForeignKey("work_types.id", ondelete="SET NULL"),
        nullable=True,
    )
    actual_work_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    break_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    overtime_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    late_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    early_leave_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    status: Mapped[AttendanceStatus] = mapped_column(
        Enum(AttendanceStatus, name="attendance_status", values_callable=_enum_values),
        nullable=False,
        default=AttendanceStatus.IN_PROGRESS,
    )
    flags: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    source_id: Mapped[int | None] = mapped_column(
        ForeignKey("attendance_records.id", ondelete="RESTRICT"),
        nullable=True,
        unique=True,
    )
    edit_reason: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    edited_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    approved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default=text("1"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    work_type: Mapped[WorkType | None] = relationship()

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        Index(
            "uq_attendance_records_root_day",
            "user_id",
            "work_date",
            unique=True,
            postgresql_where=text("source_id IS NULL AND deleted_at IS NULL"),
            sqlite_where=text("source_id IS NULL AND deleted_at IS NULL"),
        ),
        CheckConstraint(
            "source_id IS NULL OR (edit_reason IS NOT NULL AND edited_by IS NOT NULL)",
            name="ck_attendance_records_correction_attribution",
        ),
        CheckConstraint(
            "actual_work_minutes >= 0 AND overtime_minutes >= 0 AND break_minutes >= 0",
            name="ck_attendance_records_minutes_non_negative",
        ),
    )


class LeaveLedgerEntry(Base):
    __tablename__ = "leave_ledger_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    leave_type_id: Mapped[str] = mapped_column(String(64), nullable=False)
    # Net of holds: capacity still free for new holds.
    available_units: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    held_units: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    consumed_units: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        UniqueConstraint("user_id", "leave_type_id", name="uq_leave_ledger_entries_user_type"),
        CheckConstraint("available_units >= 0", name="ck_leave_ledger_entries_available"),
        CheckConstraint("held_units >= 0", name="ck_leave_ledger_entries_held"),
        CheckConstraint("consumed_units >= 0", name="ck_leave_ledger_entries_consumed"),
    )


class LeaveHold(Base):
    __tablename__ = "leave_holds"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    request_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    leave_type_id: Mapped[str] = mapped_column(String(64), nullable=False)
    units_held: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[LeaveHoldStatus] = mapped_column(
        Enum(LeaveHoldStatus, name="leave_hold_status", values_callable=_enum_values),
        nullable=False,
        default=LeaveHoldStatus.HELD,
        index=True,
    )
    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (CheckConstraint("units_held > 0", name="ck_leave_holds_units_positive"),)


class LeaveGrant(Base):
    __tablename__ = "leave_grants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    leave_type_id: Mapped[str] = mapped_column(String(64), nullable=False)
    units: Mapped[int] = mapped_column(Integer, nullable=False)
    granted_on: Mapped[date] = mapped_column(Date, nullable=False)
    expires_on: Mapped[date | None] = mapped_column(Date, nullable=True, index=True)
    lapsed_units: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    lapsed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    note: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    __table_args__ = (
        CheckConstraint("units > 0", name="ck_leave_grants_units_positive"),
        CheckConstraint("lapsed_units >= 0 AND lapsed_units <= units", name="ck_leave_grants_lapsed_units_range"),
    )


class LeaveRequest(Base):
    __tablename__ = "leave_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    leave_type_id: Mapped[str] = mapped_column(String(64), nullable=False)
    units: Mapped[int] = mapped_column(Integer, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[LeaveRequestStatus] = mapped_column(
        Enum(LeaveRequestStatus, name="leave_request_status", values_callable=_enum_values),
        nullable=False,
        default=LeaveRequestStatus.PENDING,
        index=True,
    )
    approval_steps: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default=text("1"))
    current_step: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    decided_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    note: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("units > 0", name="ck_leave_requests_units_positive"),
        CheckConstraint("end_date >= start_date", name="ck_leave_requests_date_order"),
        CheckConstraint("approval_steps >= 1", name="ck_leave_requests_steps"),
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts_utc: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
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
    ip: Mapped[str | None] = mapped_column(String(128), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    details: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)


class NotificationJob(Base):
    __tablename__ = "notification_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    job_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    scheduled_at_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="PENDING",
        server_default=text("'PENDING'"),
        index=True,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
