from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from typing import Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select
from sqlalchemy.orm import Session

from kintai.errors import UnknownWorkType
from kintai.models import WorkType
from kintai.services.clock_sessions import ClockSession, normalize_ts
from kintai.services.time_calc import floor_minutes
from kintai.settings import get_default_overtime_threshold, get_settings

DEFAULT_TIMEZONE = "Asia/Tokyo"


@dataclass(frozen=True)
class WorkTypePolicy:
    work_type_id: int | None
    overtime_threshold_minutes: int
    scheduled_start: time | None = None
    scheduled_end: time | None = None
    late_threshold_minutes: int = 0

    @property
    def has_schedule(self) -> bool:
        return self.scheduled_start is not None and self.scheduled_end is not None


@lru_cache
def attendance_timezone() -> ZoneInfo:
    raw_name = (get_settings().attendance_timezone or "").strip() or DEFAULT_TIMEZONE
    try:
        return ZoneInfo(raw_name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo(DEFAULT_TIMEZONE)


def business_day(ts: datetime, tz: ZoneInfo | None = None) -> date:
    return normalize_ts(ts).astimezone(tz or attendance_timezone()).date()


def default_policy() -> WorkTypePolicy:
    return WorkTypePolicy(work_type_id=None, overtime_threshold_minutes=get_default_overtime_threshold())


def require_work_type(db: Session, work_type_id: int | None) -> None:
    """Reject ids that no live work type row carries before they reach a write."""
    if work_type_id is None:
        return
    found = db.scalar(select(WorkType.id).where(WorkType.id == work_type_id, WorkType.deleted_at.is_(None)))
    if found is None:
        raise UnknownWorkType(work_type_id=work_type_id)


def get_work_type_policy(db: Session, work_type_id: int | None) -> WorkTypePolicy:
    if work_type_id is None:
        return default_policy()

    work_type = db.scalar(
        select(WorkType).where(
            WorkType.id == work_type_id,
            WorkType.is_active.is_(True),
            WorkType.deleted_at.is_(None),
        )
    )
    if work_type is None:
        return default_policy()

    return WorkTypePolicy(
        work_type_id=work_type.id,
        overtime_threshold_minutes=max(0, work_type.overtime_threshold_minutes),
        scheduled_start=work_type.scheduled_start,
        scheduled_end=work_type.scheduled_end,
        late_threshold_minutes=max(0, work_type.late_threshold_minutes or 0),
    )


def _local_datetime(work_date: date, value: time, tz: ZoneInfo) -> datetime:
    return datetime.combine(work_date, value, tzinfo=tz).astimezone(timezone.utc)


def evaluate_schedule(
    policy: WorkTypePolicy,
    work_date: date,
    sessions: Sequence[ClockSession],
    tz: ZoneInfo | None = None,
) -> tuple[int, int]:
    """Return ``(late_minutes, early_leave_minutes)`` for a day.

    Lateness applies once the first clock-in passes the grace period and is
    counted from the scheduled start. Early leave is only assessed once every
    session is closed. An overnight schedule ends on the following day.
    """
    start_time = policy.scheduled_start
    end_time = policy.scheduled_end
    if not sessions or start_time is None or end_time is None:
        return 0, 0

    zone = tz or attendance_timezone()
    scheduled_start = _local_datetime(work_date, start_time, zone)
    scheduled_end = _local_datetime(work_date, end_time, zone)
    if scheduled_end <= scheduled_start:
        scheduled_end += timedelta(days=1)

    late_minutes = 0
    first_in = sessions[0].in_time
    if first_in > scheduled_start + timedelta(minutes=policy.late_threshold_minutes):
        late_minutes = floor_minutes(scheduled_start, first_in)

    early_leave_minutes = 0
    last_out = sessions[-1].out_time
    if last_out is not None and not any(item.is_open for item in sessions) and last_out < scheduled_end:
        early_leave_minutes = floor_minutes(last_out, scheduled_end)

    return max(0, late_minutes), max(0, early_leave_minutes)
