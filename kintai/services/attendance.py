from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Sequence

from sqlalchemy import exists, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased
from sqlalchemy.orm.exc import StaleDataError

from kintai.errors import (
    AlreadyWorking,
    BreakAlreadyActive,
    ConcurrentUpdateConflict,
    InvalidInterval,
    NoActiveBreak,
    NotWorking,
)
from kintai.models import AttendanceRecord
from kintai.services.clock_sessions import (
    BreakInterval,
    ClockSession,
    dump_sessions,
    normalize_ts,
    parse_sessions,
    validate_sessions,
)
from kintai.services.time_calc import DerivedTimes, derive_times
from kintai.services.work_types import business_day, evaluate_schedule, get_work_type_policy, require_work_type
from kintai.settings import get_settings


class ClockAction(str, enum.Enum):
    CLOCK_IN = "clock_in"
    BREAK_START = "break_start"
    BREAK_END = "break_end"
    CLOCK_OUT = "clock_out"


class DayState(str, enum.Enum):
    NOT_STARTED = "not_started"
    WORKING = "working"
    ON_BREAK = "on_break"
    CLOCKED_OUT = "clocked_out"


@dataclass(frozen=True)
class ClockResult:
    record: AttendanceRecord
    action: ClockAction
    state: DayState
    replayed: bool = False


def day_state(sessions: Sequence[ClockSession]) -> DayState:
    if not sessions:
        return DayState.NOT_STARTED
    latest = sessions[-1]
    if not latest.is_open:
        return DayState.CLOCKED_OUT
    if latest.active_break is not None:
        return DayState.ON_BREAK
    return DayState.WORKING


def latest_event(sessions: Sequence[ClockSession]) -> tuple[ClockAction, datetime] | None:
    if not sessions:
        return None
    latest = sessions[-1]
    if latest.out_time is not None:
        return ClockAction.CLOCK_OUT, latest.out_time
    if latest.breaks:
        last_break = latest.breaks[-1]
        if last_break.break_end is None:
            return ClockAction.BREAK_START, last_break.break_start
        return ClockAction.BREAK_END, last_break.break_end
    return ClockAction.CLOCK_IN, latest.in_time


def _replace_latest(sessions: Sequence[ClockSession], session: ClockSession) -> tuple[ClockSession, ...]:
    return tuple(sessions[:-1]) + (session,)


def _clock_in(sessions: Sequence[ClockSession], ts: datetime) -> tuple[ClockSession, ...]:
    state = day_state(sessions)
    if state not in (DayState.NOT_STARTED, DayState.CLOCKED_OUT):
        raise AlreadyWorking(state=state.value)
    if sessions:
        previous_out = sessions[-1].out_time
        if previous_out is not None and ts < previous_out:
            raise InvalidInterval(
                "Clock-in precedes the previous clock-out.",
                ts=ts.isoformat(),
                previous_out_time=previous_out.isoformat(),
            )
    return tuple(sessions) + (ClockSession(in_time=ts),)


def _start_break(sessions: Sequence[ClockSession], ts: datetime) -> tuple[ClockSession, ...]:
    state = day_state(sessions)
    if state == DayState.ON_BREAK:
        raise BreakAlreadyActive()
    if state != DayState.WORKING:
        raise NotWorking(state=state.value)
    latest = sessions[-1]
    if ts < latest.in_time:
        raise InvalidInterval("Break start precedes clock-in.", ts=ts.isoformat(), in_time=latest.in_time.isoformat())
    if latest.breaks:
        previous_end = latest.breaks[-1].break_end
        if previous_end is not None and ts < previous_end:
            raise InvalidInterval(
                "Break start precedes the end of the previous break.",
                ts=ts.isoformat(),
                previous_break_end=previous_end.isoformat(),
            )
    return _replace_latest(sessions, latest.with_break(BreakInterval(break_start=ts)))


def _end_break(sessions: Sequence[ClockSession], ts: datetime) -> tuple[ClockSession, ...]:
    if day_state(sessions) != DayState.ON_BREAK:
        raise NoActiveBreak()
    latest = sessions[-1]
    active = latest.active_break
    if active is None:
        raise NoActiveBreak()
    if ts < active.break_start:
        raise InvalidInterval(
            "Break end precedes break start.",
            ts=ts.isoformat(),
            break_start=active.break_start.isoformat(),
        )
    return _replace_latest(sessions, latest.with_active_break_closed(ts))


def _clock_out(sessions: Sequence[ClockSession], ts: datetime) -> tuple[ClockSession, ...]:
    state = day_state(sessions)
    if state not in (DayState.WORKING, DayState.ON_BREAK):
        raise NotWorking(state=state.value)
    latest = sessions[-1]
    if ts < latest.in_time:
        raise InvalidInterval("Clock-out precedes clock-in.", ts=ts.isoformat(), in_time=latest.in_time.isoformat())
    # An open break stays open; derivation flags it.
    return _replace_latest(sessions, latest.closed_at(ts))


_TRANSITIONS = {
    ClockAction.CLOCK_IN: _clock_in,
    ClockAction.BREAK_START: _start_break,
    ClockAction.BREAK_END: _end_break,
    ClockAction.CLOCK_OUT: _clock_out,
}


def apply_transition(
    sessions: Sequence[ClockSession],
    action: ClockAction,
    ts: datetime,
) -> tuple[ClockSession, ...]:
    """Return the session sequence after ``action`` at ``ts``.

    Guards only look at already-recorded events; ``ts`` is trusted otherwise.
    """
    normalized = normalize_ts(ts)
    updated = _TRANSITIONS[action](sessions, normalized)
    validate_sessions(updated, reference_ts=normalized)
    return updated


def recalculate_record(db: Session, record: AttendanceRecord, sessions: Sequence[ClockSession]) -> DerivedTimes:
    policy = get_work_type_policy(db, record.work_type_id)
    late_minutes, early_leave_minutes = evaluate_schedule(policy, record.work_date, sessions)
    derived = derive_times(
        sessions,
        overtime_threshold_minutes=policy.overtime_threshold_minutes,
        late_minutes=late_minutes,
        early_leave_minutes=early_leave_minutes,
    )
    record.clock_records = dump_sessions(sessions)
    record.actual_work_minutes = derived.actual_work_minutes
    record.break_minutes = derived.break_minutes
    record.overtime_minutes = derived.overtime_minutes
    record.late_minutes = derived.late_minutes
    record.early_leave_minutes = derived.early_leave_minutes
    record.status = derived.status
    record.flags = dict(derived.flags)
    return derived


def head_record_for_day(db: Session, *, user_id: str, work_date: date) -> AttendanceRecord | None:
    """Latest live row of a day's correction chain."""
    successor = aliased(AttendanceRecord)
    return db.scalar(
        select(AttendanceRecord)
        .where(
            AttendanceRecord.user_id == user_id,
            AttendanceRecord.work_date == work_date,
            AttendanceRecord.deleted_at.is_(None),
            ~exists().where(successor.source_id == AttendanceRecord.id),
        )
        .order_by(AttendanceRecord.id.desc())
        .limit(1)
    )


def _root_exists(db: Session, *, user_id: str, work_date: date) -> bool:
    root_id = db.scalar(
        select(AttendanceRecord.id).where(
            AttendanceRecord.user_id == user_id,
            AttendanceRecord.work_date == work_date,
            AttendanceRecord.source_id.is_(None),
            AttendanceRecord.deleted_at.is_(None),
        )
    )
    return root_id is not None


def _result(record: AttendanceRecord, action: ClockAction, sessions: Sequence[ClockSession], replayed: bool) -> ClockResult:
    return ClockResult(record=record, action=action, state=day_state(sessions), replayed=replayed)


def record_clock_event(
    db: Session,
    *,
    user_id: str,
    action: ClockAction,
    ts: datetime | None = None,
    work_type_id: int | None = None,
) -> ClockResult:
    ts_utc = normalize_ts(ts) if ts is not None else datetime.now(timezone.utc)
    work_date = business_day(ts_utc)
    retries = max(0, get_settings().clock_conflict_retries)
    require_work_type(db, work_type_id)

    for _attempt in range(retries + 1):
        record = head_record_for_day(db, user_id=user_id, work_date=work_date)
        sessions = parse_sessions(record.clock_records) if record is not None else ()

        if record is not None and latest_event(sessions) == (action, ts_utc):
            return _result(record, action, sessions, replayed=True)

        updated = apply_transition(sessions, action, ts_utc)

        creating = record is None
        if creating:
            record = AttendanceRecord(user_id=user_id, work_date=work_date, work_type_id=work_type_id)
            db.add(record)
        recalculate_record(db, record, updated)

        try:
            db.commit()
        except StaleDataError:
            # Another request wrote this day first; reload and re-run the guards.
            db.rollback()
            continue
        except IntegrityError:
            db.rollback()
            if creating and _root_exists(db, user_id=user_id, work_date=work_date):
                # Lost the race to create the day's root row.
                continue
            raise

        db.refresh(record)
        return _result(record, action, updated, replayed=False)

    raise ConcurrentUpdateConflict(user_id=user_id, work_date=work_date.isoformat(), attempts=retries + 1)


def clock_in(db: Session, *, user_id: str, ts: datetime | None = None, work_type_id: int | None = None) -> ClockResult:
    return record_clock_event(db, user_id=user_id, action=ClockAction.CLOCK_IN, ts=ts, work_type_id=work_type_id)


def start_break(db: Session, *, user_id: str, ts: datetime | None = None) -> ClockResult:
    return record_clock_event(db, user_id=user_id, action=ClockAction.BREAK_START, ts=ts)


def end_break(db: Session, *, user_id: str, ts: datetime | None = None) -> ClockResult:
    return record_clock_event(db, user_id=user_id, action=ClockAction.BREAK_END, ts=ts)


def clock_out(db: Session, *, user_id: str, ts: datetime | None = None) -> ClockResult:
    return record_clock_event(db, user_id=user_id, action=ClockAction.CLOCK_OUT, ts=ts)


def get_today(db: Session, *, user_id: str, now: datetime | None = None) -> tuple[AttendanceRecord | None, DayState]:
    reference = normalize_ts(now) if now is not None else datetime.now(timezone.utc)
    record = head_record_for_day(db, user_id=user_id, work_date=business_day(reference))
    if record is None:
        return None, DayState.NOT_STARTED
    return record, day_state(parse_sessions(record.clock_records))
