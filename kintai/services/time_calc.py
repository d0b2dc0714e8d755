from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Sequence

from kintai.models import AttendanceStatus
from kintai.services.clock_sessions import ClockSession

DEFAULT_OVERTIME_THRESHOLD_MINUTES = 480

FLAG_NEGATIVE_SESSION = "NEGATIVE_SESSION"
FLAG_NEGATIVE_BREAK = "NEGATIVE_BREAK"
FLAG_BREAK_EXCEEDS_SESSION = "BREAK_EXCEEDS_SESSION"
FLAG_OPEN_BREAK_AT_CLOCK_OUT = "OPEN_BREAK_AT_CLOCK_OUT"


@dataclass(frozen=True)
class SessionComputation:
    session_minutes: int
    break_minutes: int
    worked_minutes: int
    complete: bool


@dataclass(frozen=True)
class DerivedTimes:
    status: AttendanceStatus
    actual_work_minutes: int
    break_minutes: int
    overtime_minutes: int
    late_minutes: int
    early_leave_minutes: int
    sessions: tuple[SessionComputation, ...] = ()
    flags: dict[str, Any] = field(default_factory=dict)

    @property
    def in_progress(self) -> bool:
        return self.status == AttendanceStatus.IN_PROGRESS


def floor_minutes(start: datetime, end: datetime) -> int:
    """Whole minutes from start to end, truncated. Negative when end < start."""
    return int((end - start).total_seconds() // 60)


def _append_flag(flags: dict[str, Any], key: str, value: Any) -> None:
    flags.setdefault(key, []).append(value)


def compute_session(session: ClockSession, *, index: int, flags: dict[str, Any]) -> SessionComputation:
    if session.out_time is None:
        return SessionComputation(session_minutes=0, break_minutes=0, worked_minutes=0, complete=False)

    raw_session = floor_minutes(session.in_time, session.out_time)
    if raw_session < 0:
        _append_flag(flags, FLAG_NEGATIVE_SESSION, index)
    session_minutes = max(0, raw_session)

    break_minutes = 0
    for break_index, item in enumerate(session.breaks):
        if item.break_end is None:
            # In-progress breaks never count against the worker.
            continue
        raw_break = floor_minutes(item.break_start, item.break_end)
        if raw_break < 0:
            _append_flag(flags, FLAG_NEGATIVE_BREAK, [index, break_index])
            continue
        break_minutes += raw_break

    if session.active_break is not None:
        _append_flag(flags, FLAG_OPEN_BREAK_AT_CLOCK_OUT, index)

    if break_minutes > session_minutes:
        _append_flag(flags, FLAG_BREAK_EXCEEDS_SESSION, index)

    return SessionComputation(
        session_minutes=session_minutes,
        break_minutes=break_minutes,
        worked_minutes=max(0, session_minutes - break_minutes),
        complete=True,
    )


def overtime_minutes(actual_work_minutes: int, threshold_minutes: int | None) -> int:
    threshold = DEFAULT_OVERTIME_THRESHOLD_MINUTES if threshold_minutes is None else max(0, threshold_minutes)
    return max(0, actual_work_minutes - threshold)


def derive_status(
    sessions: Sequence[ClockSession],
    *,
    late_minutes: int,
    early_leave_minutes: int,
) -> AttendanceStatus:
    if not sessions:
        return AttendanceStatus.ABSENT
    if any(item.is_open for item in sessions):
        return AttendanceStatus.IN_PROGRESS
    late = late_minutes > 0
    early = early_leave_minutes > 0
    if late and early:
        return AttendanceStatus.LATE_EARLY_LEAVE
    if late:
        return AttendanceStatus.LATE
    if early:
        return AttendanceStatus.EARLY_LEAVE
    return AttendanceStatus.NORMAL


def derive_times(
    sessions: Sequence[ClockSession],
    *,
    overtime_threshold_minutes: int | None = DEFAULT_OVERTIME_THRESHOLD_MINUTES,
    late_minutes: int = 0,
    early_leave_minutes: int = 0,
) -> DerivedTimes:
    """Recompute every derived figure of a day from its clock sessions.

    Lateness and early leave come from the work-type policy and are only
    combined into the status here. Malformed intervals are clamped to zero
    and reported through ``flags`` instead of raising.
    """
    flags: dict[str, Any] = {}
    computations = tuple(
        compute_session(session, index=index, flags=flags) for index, session in enumerate(sessions)
    )
    actual = sum(item.worked_minutes for item in computations)
    breaks = sum(item.break_minutes for item in computations)
    safe_late = max(0, late_minutes)
    safe_early = max(0, early_leave_minutes)

    return DerivedTimes(
        status=derive_status(sessions, late_minutes=safe_late, early_leave_minutes=safe_early),
        actual_work_minutes=actual,
        break_minutes=breaks,
        overtime_minutes=overtime_minutes(actual, overtime_threshold_minutes),
        late_minutes=safe_late,
        early_leave_minutes=safe_early,
        sessions=computations,
        flags=flags,
    )
