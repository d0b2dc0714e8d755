from datetime import date, timedelta

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from kintai.audit import audit_request
from kintai.db import get_db
from kintai.models import AttendanceRecord
from kintai.schemas import (
    AttendanceCorrectionRequest,
    AttendanceHistoryEntry,
    AttendanceHistoryResponse,
    AttendanceRecomputeRequest,
    AttendanceRecordRead,
    FieldChangeRead,
    GrantLapseRead,
    LeaveGrantCreate,
    LeaveGrantRead,
    LeaveHoldRead,
    MonthlySummaryRead,
)
from kintai.security import Actor, require_admin
from kintai.services.corrections import apply_correction, diff, history_with_changes, recompute_record
from kintai.services.leave_ledger import expire_grants, grant, list_stale_holds
from kintai.services.monthly import summarize_month

router = APIRouter(tags=["admin"])


def _changed_fields(db: Session, record: AttendanceRecord) -> list[str]:
    if record.source_id is None:
        return []
    source = db.get(AttendanceRecord, record.source_id)
    if source is None:
        return []
    return [item.field_name for item in diff(source, record)]


def _audit_correction(
    db: Session,
    request: Request,
    *,
    actor: Actor,
    action: str,
    record: AttendanceRecord,
) -> None:
    request.state.attendance_record_id = record.id
    audit_request(
        db,
        request,
        actor=actor,
        action=action,
        entity_type="attendance_record",
        entity_id=record.id,
        details={
            "source_id": record.source_id,
            "reason": record.edit_reason,
            "changed_fields": _changed_fields(db, record),
            "flags": record.flags or {},
        },
    )


@router.post(
    "/api/admin/attendance/{record_id}/corrections",
    response_model=AttendanceRecordRead,
    status_code=status.HTTP_201_CREATED,
)
def create_attendance_correction(
    record_id: int,
    payload: AttendanceCorrectionRequest,
    request: Request,
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db),
) -> AttendanceRecordRead:
    corrected = apply_correction(
        db,
        original_id=record_id,
        changes=payload.to_changes(),
        editor_id=actor.user_id,
        reason=payload.reason,
    )
    _audit_correction(db, request, actor=actor, action="ATTENDANCE_CORRECTED", record=corrected)
    return AttendanceRecordRead.model_validate(corrected)


@router.post(
    "/api/admin/attendance/{record_id}/recompute",
    response_model=AttendanceRecordRead,
    status_code=status.HTTP_201_CREATED,
)
def recompute_attendance_record(
    record_id: int,
    payload: AttendanceRecomputeRequest,
    request: Request,
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db),
) -> AttendanceRecordRead:
    recomputed = recompute_record(db, record_id=record_id, editor_id=actor.user_id, reason=payload.reason)
    _audit_correction(db, request, actor=actor, action="ATTENDANCE_RECOMPUTED", record=recomputed)
    return AttendanceRecordRead.model_validate(recomputed)


@router.get("/api/admin/attendance/{record_id}/history", response_model=AttendanceHistoryResponse)
def get_attendance_history(
    record_id: int,
    _actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db),
) -> AttendanceHistoryResponse:
    entries = [
        AttendanceHistoryEntry(
            record=AttendanceRecordRead.model_validate(record),
            changes=[FieldChangeRead.model_validate(item) for item in changes],
        )
        for record, changes in history_with_changes(db, record_id)
    ]
    return AttendanceHistoryResponse(record_id=record_id, entries=entries)


@router.get("/api/admin/attendance/monthly", response_model=MonthlySummaryRead)
def get_user_monthly_summary(
    user_id: str = Query(min_length=1, max_length=64),
    year: int = Query(ge=2000, le=2100),
    month: int = Query(ge=1, le=12),
    _actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db),
) -> MonthlySummaryRead:
    return MonthlySummaryRead.model_validate(summarize_month(db, user_id=user_id, year=year, month=month))


@router.post("/api/admin/leave/grants", response_model=LeaveGrantRead, status_code=status.HTTP_201_CREATED)
def create_leave_grant(
    payload: LeaveGrantCreate,
    request: Request,
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db),
) -> LeaveGrantRead:
    credit = grant(
        db,
        user_id=payload.user_id,
        leave_type_id=payload.leave_type_id,
        units=payload.units,
        actor_id=actor.user_id,
        granted_on=payload.granted_on,
        expires_on=payload.expires_on,
        note=payload.note,
    )
    audit_request(
        db,
        request,
        actor=actor,
        action="LEAVE_GRANTED",
        entity_type="leave_grant",
        entity_id=credit.id,
        details={"user_id": credit.user_id, "leave_type_id": credit.leave_type_id, "units": credit.units},
    )
    return LeaveGrantRead.model_validate(credit)


@router.post("/api/admin/leave/grants/expire", response_model=list[GrantLapseRead])
def expire_leave_grants(
    request: Request,
    as_of: date | None = Query(default=None),
    user_id: str | None = Query(default=None, min_length=1, max_length=64),
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db),
) -> list[GrantLapseRead]:
    lapses = expire_grants(db, as_of=as_of, user_id=user_id)
    if lapses:
        audit_request(
            db,
            request,
            actor=actor,
            action="LEAVE_GRANTS_EXPIRED",
            entity_type="leave_grant",
            details={
                "as_of": as_of.isoformat() if as_of else None,
                "grant_ids": [item.grant_id for item in lapses],
                "lapsed_units": sum(item.lapsed_units for item in lapses),
            },
        )
    return [GrantLapseRead.model_validate(item) for item in lapses]


@router.get("/api/admin/leave/holds/stale", response_model=list[LeaveHoldRead])
def get_stale_leave_holds(
    older_than_minutes: int | None = Query(default=None, ge=0),
    _actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db),
) -> list[LeaveHoldRead]:
    older_than = timedelta(minutes=older_than_minutes) if older_than_minutes is not None else None
    return [LeaveHoldRead.model_validate(item) for item in list_stale_holds(db, older_than=older_than)]
