"""Clock session value types.

A day's attendance is an ordered tuple of ``ClockSession`` values, each with an
ordered tuple of ``BreakInterval`` values. Instances are frozen; transitions
build new tuples with ``dataclasses.replace`` instead of editing by index.

``from_dict``/``to_dict`` convert to the JSON shape stored in
``attendance_records.clock_records``::

    {"in_time": iso, "out_time": iso | null, "breaks": [{"break_start": iso, "break_end": iso | null}]}
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence

from kintai.errors import InvalidClockRecord, InvalidInterval


def normalize_ts(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_ts(raw: Any, *, field_name: str, required: bool) -> datetime | None:
    # Legacy rows store an open end as "" rather than null.
    if raw is None or raw == "":
        if required:
            raise InvalidClockRecord(f"{field_name} is required.", field=field_name)
        return None
    if isinstance(raw, datetime):
        return normalize_ts(raw)
    if not isinstance(raw, str):
        raise InvalidClockRecord(f"{field_name} must be an ISO-8601 string.", field=field_name)
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError as exc:
        raise InvalidClockRecord(f"{field_name} is not a valid timestamp.", field=field_name, value=raw) from exc
    return normalize_ts(parsed)


def _require_ts(raw: Any, *, field_name: str) -> datetime:
    value = _parse_ts(raw, field_name=field_name, required=True)
    if value is None:
        raise InvalidClockRecord(f"{field_name} is required.", field=field_name)
    return value


def _format_ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    return normalize_ts(value).isoformat()


@dataclass(frozen=True, slots=True)
class BreakInterval:
    break_start: datetime
    break_end: datetime | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "break_start", normalize_ts(self.break_start))
        if self.break_end is not None:
            object.__setattr__(self, "break_end", normalize_ts(self.break_end))

    @property
    def is_open(self) -> bool:
        return self.break_end is None

    @classmethod
    def from_dict(cls, raw: Any) -> BreakInterval:
        if not isinstance(raw, dict):
            raise InvalidClockRecord("Break entry must be an object.")
        start = _require_ts(raw.get("break_start"), field_name="break_start")
        end = _parse_ts(raw.get("break_end"), field_name="break_end", required=False)
        return cls(break_start=start, break_end=end)

    def to_dict(self) -> dict[str, Any]:
        return {
            "break_start": _format_ts(self.break_start),
            "break_end": _format_ts(self.break_end),
        }


@dataclass(frozen=True, slots=True)
class ClockSession:
    in_time: datetime
    out_time: datetime | None = None
    breaks: tuple[BreakInterval, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        object.__setattr__(self, "in_time", normalize_ts(self.in_time))
        if self.out_time is not None:
            object.__setattr__(self, "out_time", normalize_ts(self.out_time))
        object.__setattr__(self, "breaks", tuple(self.breaks))

    @property
    def is_open(self) -> bool:
        return self.out_time is None

    @property
    def active_break(self) -> BreakInterval | None:
        for item in reversed(self.breaks):
            if item.is_open:
                return item
        return None

    def with_break(self, item: BreakInterval) -> ClockSession:
        return replace(self, breaks=self.breaks + (item,))

    def with_active_break_closed(self, ts: datetime) -> ClockSession:
        closed: list[BreakInterval] = []
        done = False
        for item in reversed(self.breaks):
            if not done and item.is_open:
                closed.append(replace(item, break_end=ts))
                done = True
            else:
                closed.append(item)
        return replace(self, breaks=tuple(reversed(closed)))

    def closed_at(self, ts: datetime) -> ClockSession:
        return replace(self, out_time=ts)

    @classmethod
    def from_dict(cls, raw: Any) -> ClockSession:
        if not isinstance(raw, dict):
            raise InvalidClockRecord("Clock session must be an object.")
        in_time = _require_ts(raw.get("in_time"), field_name="in_time")
        out_time = _parse_ts(raw.get("out_time"), field_name="out_time", required=False)
        raw_breaks = raw.get("breaks") or []
        if not isinstance(raw_breaks, list):
            raise InvalidClockRecord("breaks must be a list.", field="breaks")
        return cls(
            in_time=in_time,
            out_time=out_time,
            breaks=tuple(BreakInterval.from_dict(item) for item in raw_breaks),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "in_time": _format_ts(self.in_time),
            "out_time": _format_ts(self.out_time),
            "breaks": [item.to_dict() for item in self.breaks],
        }


def parse_sessions(raw: Any) -> tuple[ClockSession, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise InvalidClockRecord("clock_records must be a list.", field="clock_records")
    return tuple(ClockSession.from_dict(item) for item in raw)


def dump_sessions(sessions: Iterable[ClockSession]) -> list[dict[str, Any]]:
    return [item.to_dict() for item in sessions]


def validate_session(
    session: ClockSession,
    *,
    reference_ts: datetime | None = None,
    index: int = 0,
) -> None:
    """Raise ``InvalidInterval`` when the session breaks an interval invariant.

    Open sessions are bounded by ``reference_ts`` when given; without it the
    upper bound of an open session is not checked.
    """
    if session.out_time is not None and session.out_time < session.in_time:
        raise InvalidInterval(
            "out_time precedes in_time.",
            session_index=index,
            in_time=session.in_time.isoformat(),
            out_time=session.out_time.isoformat(),
        )

    upper = session.out_time
    if upper is None and reference_ts is not None:
        upper = normalize_ts(reference_ts)

    open_breaks = 0
    for break_index, item in enumerate(session.breaks):
        if item.break_end is None:
            open_breaks += 1
        elif item.break_end < item.break_start:
            raise InvalidInterval(
                "break_end precedes break_start.",
                session_index=index,
                break_index=break_index,
            )
        if item.break_start < session.in_time:
            raise InvalidInterval(
                "Break starts before the session.",
                session_index=index,
                break_index=break_index,
            )
        if upper is not None:
            last_edge = item.break_end or item.break_start
            if last_edge > upper:
                raise InvalidInterval(
                    "Break ends after the session.",
                    session_index=index,
                    break_index=break_index,
                )

    if open_breaks > 1:
        raise InvalidInterval("More than one break is open.", session_index=index, open_breaks=open_breaks)


def validate_sessions(sessions: Sequence[ClockSession], *, reference_ts: datetime | None = None) -> None:
    previous: ClockSession | None = None
    for index, session in enumerate(sessions):
        validate_session(session, reference_ts=reference_ts, index=index)
        if previous is not None:
            if previous.out_time is None:
                raise InvalidInterval(
                    "Only the last session may be open.",
                    session_index=index - 1,
                )
            if session.in_time < previous.out_time:
                raise InvalidInterval(
                    "Session starts before the previous session ended.",
                    session_index=index,
                )
        previous = session
