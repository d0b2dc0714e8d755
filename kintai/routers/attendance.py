from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from kintai.audit import audit_request
from kintai.db import get_db
from kintai.schemas import (
    AttendanceRecordRead,
    AttendanceTodayResponse,
    ClockActionResponse,
    ClockEventRequest,
    ClockInRequest,
    MonthlySummaryRead,
)
from kintai.security import Actor, require_actor
from kintai.services.attendance import (
    ClockResult,
    clock_in,
    clock_out,
    end_break,
    get_today,
    start_break,
)
from kintai.services.monthly import summarize_month
from kintai.services.work_types import attendance_timezone

router = APIRouter(tags=["attendance"])


def _clock_response(
    db: Session,
    request: Request,
    *,
    actor: Actor,
    result: ClockResult,
) -> ClockActionResponse:
    record = result.record
    request.state.attendance_record_id = record.id
    request.state.flags = record.flags or {}
    if not result.replayed:
        audit_request(
            db,
            request,
            actor=actor,
            action=f"ATTENDANCE_{result.action.value.upper()}",
            entity_type="attendance_record",
            entity_id=record.id,
            details={
                "state": result.state.value,
                "status": record.status.value,
                "flags": record.flags or {},
            },
        )
    return ClockActionResponse(
        action=result.action.value,
        state=result.state.value,
        replayed=result.replayed,
        record=AttendanceRecordRead.model_validate(record),
    )


@router.post("/api/attendance/clock-in", response_model=ClockActionResponse)
def post_clock_in(
    payload: ClockInRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> ClockActionResponse:
    result = clock_in(db, user_id=actor.user_id, ts=payload.ts, work_type_id=payload.work_type_id)
    return _clock_response(db, request, actor=actor, result=result)


@router.post("/api/attendance/break-start", response_model=ClockActionResponse)
def post_break_start(
    payload: ClockEventRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> ClockActionResponse:
    result = start_break(db, user_id=actor.user_id, ts=payload.ts)
    return _clock_response(db, request, actor=actor, result=result)


@router.post("/api/attendance/break-end", response_model=ClockActionResponse)
def post_break_end(
    payload: ClockEventRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> ClockActionResponse:
    result = end_break(db, user_id=actor.user_id, ts=payload.ts)
    return _clock_response(db, request, actor=actor, result=result)


@router.post("/api/attendance/clock-out", response_model=ClockActionResponse)
def post_clock_out(
    payload: ClockEventRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> ClockActionResponse:
    result = clock_out(db, user_id=actor.user_id, ts=payload.ts)
    return _clock_response(db, request, actor=actor, result=result)


@router.get("/api/attendance/today", response_model=AttendanceTodayResponse)
def get_attendance_today(
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> AttendanceTodayResponse:
    record, state = get_today(db, user_id=actor.user_id)
    return AttendanceTodayResponse(
        user_id=actor.user_id,
        state=state.value,
        record=AttendanceRecordRead.model_validate(record) if record is not None else None,
    )


@router.get("/api/attendance/monthly", response_model=MonthlySummaryRead)
def get_attendance_monthly(
    year: int | None = Query(default=None, ge=2000, le=2100),
    month: int | None = Query(default=None, ge=1, le=12),
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> MonthlySummaryRead:
    today = datetime.now(timezone.utc).astimezone(attendance_timezone()).date()
    summary = summarize_month(
        db,
        user_id=actor.user_id,
        year=year or today.year,
        month=month or today.month,
    )
    return MonthlySummaryRead.model_validate(summary)
