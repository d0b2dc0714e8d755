"""Append-only correction chain for attendance records.

A correction never touches the row it corrects. It inserts a new row whose
``source_id`` points at the previous one and whose derived minutes are
recomputed from the merged clock data. ``source_id`` is unique, so a row has
at most one successor and the chain stays linear.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from kintai.errors import HistoryCycle, InvalidClockRecord, MissingEditReason, RecordNotFound, RecordSuperseded
from kintai.models import AttendanceRecord
from kintai.services.attendance import recalculate_record
from kintai.services.clock_sessions import ClockSession, parse_sessions, validate_sessions
from kintai.services.work_types import require_work_type

# A correction chain stays on the business day its root row was recorded for.
CORRECTABLE_FIELDS = frozenset({"clock_records", "work_type_id"})

TRACKED_FIELDS: tuple[str, ...] = (
    "work_date",
    "work_type_id",
    "clock_records",
    "actual_work_minutes",
    "break_minutes",
    "overtime_minutes",
    "late_minutes",
    "early_leave_minutes",
    "status",
    "flags",
    "approved_by",
    "approved_at",
)


@dataclass(frozen=True)
class FieldChange:
    field_name: str
    old_value: Any
    new_value: Any

    def to_dict(self) -> dict[str, Any]:
        return {"field_name": self.field_name, "old_value": self.old_value, "new_value": self.new_value}


def _get_live_record(db: Session, record_id: int) -> AttendanceRecord:
    record = db.get(AttendanceRecord, record_id)
    if record is None or record.deleted_at is not None:
        raise RecordNotFound(record_id=record_id)
    return record


def _successor_id(db: Session, record_id: int) -> int | None:
    return db.scalar(select(AttendanceRecord.id).where(AttendanceRecord.source_id == record_id))


def _coerce_sessions(raw: Any) -> tuple[ClockSession, ...]:
    if isinstance(raw, (list, tuple)) and raw and all(isinstance(item, ClockSession) for item in raw):
        return tuple(raw)
    return parse_sessions(raw)


def apply_correction(
    db: Session,
    *,
    original_id: int,
    changes: Mapping[str, Any],
    editor_id: str,
    reason: str | None,
) -> AttendanceRecord:
    """Insert a corrected copy of ``original_id`` and return it.

    Fields absent from ``changes`` are carried forward. Derived minutes,
    status and flags are always recomputed.
    """
    normalized_reason = (reason or "").strip()
    if not normalized_reason:
        raise MissingEditReason(record_id=original_id)

    unknown = sorted(set(changes) - CORRECTABLE_FIELDS)
    if unknown:
        raise InvalidClockRecord("Only clock data and work type can be corrected.", fields=unknown)

    original = _get_live_record(db, original_id)
    successor_id = _successor_id(db, original.id)
    if successor_id is not None:
        raise RecordSuperseded(record_id=original.id, successor_id=successor_id)

    if "clock_records" in changes:
        sessions = _coerce_sessions(changes["clock_records"])
        validate_sessions(sessions)
    else:
        sessions = parse_sessions(original.clock_records)

    work_type_id = changes.get("work_type_id", original.work_type_id)
    if "work_type_id" in changes:
        require_work_type(db, work_type_id)

    corrected = AttendanceRecord(
        user_id=original.user_id,
        work_date=original.work_date,
        work_type_id=work_type_id,
        source_id=original.id,
        edit_reason=normalized_reason,
        edited_by=editor_id,
        approved_by=original.approved_by,
        approved_at=original.approved_at,
    )
    recalculate_record(db, corrected, sessions)
    db.add(corrected)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        successor_id = _successor_id(db, original_id)
        if successor_id is None:
            raise
        raise RecordSuperseded(record_id=original_id, successor_id=successor_id) from exc

    db.refresh(corrected)
    return corrected


def history(db: Session, record_id: int) -> list[AttendanceRecord]:
    """Return the whole correction chain of ``record_id``, oldest first."""
    start = db.get(AttendanceRecord, record_id)
    if start is None:
        raise RecordNotFound(record_id=record_id)

    visited = {start.id}
    chain = [start]
    current = start
    while current.source_id is not None:
        if current.source_id in visited:
            raise HistoryCycle(record_id=record_id, repeated_id=current.source_id)
        previous = db.get(AttendanceRecord, current.source_id)
        if previous is None:
            raise RecordNotFound(record_id=current.source_id)
        visited.add(previous.id)
        chain.append(previous)
        current = previous
    chain.reverse()

    current = start
    while True:
        successor = db.scalar(select(AttendanceRecord).where(AttendanceRecord.source_id == current.id))
        if successor is None:
            break
        if successor.id in visited:
            raise HistoryCycle(record_id=record_id, repeated_id=successor.id)
        visited.add(successor.id)
        chain.append(successor)
        current = successor

    return chain


def _field_value(record: AttendanceRecord, field_name: str) -> Any:
    value = getattr(record, field_name)
    if field_name == "status" and value is not None:
        return value.value
    return value


def diff(prev: AttendanceRecord, new: AttendanceRecord) -> list[FieldChange]:
    changes: list[FieldChange] = []
    for field_name in TRACKED_FIELDS:
        old_value = _field_value(prev, field_name)
        new_value = _field_value(new, field_name)
        if old_value != new_value:
            changes.append(FieldChange(field_name=field_name, old_value=old_value, new_value=new_value))
    return changes


def history_with_changes(db: Session, record_id: int) -> list[tuple[AttendanceRecord, list[FieldChange]]]:
    chain = history(db, record_id)
    items: list[tuple[AttendanceRecord, list[FieldChange]]] = []
    for index, record in enumerate(chain):
        changes = diff(chain[index - 1], record) if index else []
        items.append((record, changes))
    return items


def recompute_record(db: Session, *, record_id: int, editor_id: str, reason: str | None) -> AttendanceRecord:
    """Re-derive the live row of ``record_id``'s chain under the current work-type policy."""
    head = history(db, record_id)[-1]
    return apply_correction(db, original_id=head.id, changes={}, editor_id=editor_id, reason=reason)
