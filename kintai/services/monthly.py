from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from sqlalchemy import exists, select
from sqlalchemy.orm import Session, aliased

from kintai.errors import InvalidInterval
from kintai.models import AttendanceRecord, AttendanceStatus


@dataclass(frozen=True)
class DaySummary:
    record_id: int
    work_date: date
    status: AttendanceStatus
    actual_work_minutes: int
    break_minutes: int
    overtime_minutes: int
    late_minutes: int
    early_leave_minutes: int
    flags: dict[str, Any] = field(default_factory=dict)
    corrected: bool = False


@dataclass(frozen=True)
class MonthlySummary:
    user_id: str
    year: int
    month: int
    days: tuple[DaySummary, ...]
    worked_days: int
    total_actual_work_minutes: int
    total_break_minutes: int
    total_overtime_minutes: int
    total_late_minutes: int
    total_early_leave_minutes: int
    status_counts: dict[str, int]
    flagged_days: int


def _month_bounds(year: int, month: int) -> tuple[date, date]:
    if month < 1 or month > 12:
        raise InvalidInterval("month must be between 1 and 12.", year=year, month=month)
    return date(year, month, 1), date(year, month, monthrange(year, month)[1])


def _head_records(db: Session, *, user_id: str, start: date, end: date) -> list[AttendanceRecord]:
    successor = aliased(AttendanceRecord)
    stmt = (
        select(AttendanceRecord)
        .where(
            AttendanceRecord.user_id == user_id,
            AttendanceRecord.work_date >= start,
            AttendanceRecord.work_date <= end,
            AttendanceRecord.deleted_at.is_(None),
            ~exists().where(successor.source_id == AttendanceRecord.id),
        )
        .order_by(AttendanceRecord.work_date.asc(), AttendanceRecord.id.asc())
    )
    return list(db.scalars(stmt).all())


def summarize_month(db: Session, *, user_id: str, year: int, month: int) -> MonthlySummary:
    """Totals over the live row of every day in the month.

    Superseded rows of a correction chain are ignored. Days still in progress
    are listed but contribute no worked day.
    """
    start, end = _month_bounds(year, month)
    days = tuple(
        DaySummary(
            record_id=record.id,
            work_date=record.work_date,
            status=record.status,
            actual_work_minutes=record.actual_work_minutes,
            break_minutes=record.break_minutes,
            overtime_minutes=record.overtime_minutes,
            late_minutes=record.late_minutes,
            early_leave_minutes=record.early_leave_minutes,
            flags=dict(record.flags or {}),
            corrected=record.source_id is not None,
        )
        for record in _head_records(db, user_id=user_id, start=start, end=end)
    )

    status_counts = {item.value: 0 for item in AttendanceStatus}
    for day in days:
        status_counts[day.status.value] += 1

    worked_statuses = {
        AttendanceStatus.NORMAL,
        AttendanceStatus.LATE,
        AttendanceStatus.EARLY_LEAVE,
        AttendanceStatus.LATE_EARLY_LEAVE,
    }
    return MonthlySummary(
        user_id=user_id,
        year=year,
        month=month,
        days=days,
        worked_days=sum(1 for day in days if day.status in worked_statuses),
        total_actual_work_minutes=sum(day.actual_work_minutes for day in days),
        total_break_minutes=sum(day.break_minutes for day in days),
        total_overtime_minutes=sum(day.overtime_minutes for day in days),
        total_late_minutes=sum(day.late_minutes for day in days),
        total_early_leave_minutes=sum(day.early_leave_minutes for day in days),
        status_counts=status_counts,
        flagged_days=sum(1 for day in days if day.flags),
    )
