from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from kintai.audit import audit_request
from kintai.db import get_db
from kintai.models import LeaveRequest
from kintai.schemas import LeaveBalanceRead, LeaveRequestCreate, LeaveRequestDecision, LeaveRequestRead
from kintai.security import Actor, require_actor, require_admin
from kintai.services.leave_ledger import get_balance, list_balances
from kintai.services.leave_requests import (
    approve_leave_request,
    delete_leave_request,
    reject_leave_request,
    submit_leave_request,
    withdraw_leave_request,
)

router = APIRouter(tags=["leave"])


def _audit_transition(
    db: Session,
    request: Request,
    *,
    actor: Actor,
    action: str,
    leave_request: LeaveRequest,
) -> None:
    request.state.leave_request_id = leave_request.id
    audit_request(
        db,
        request,
        actor=actor,
        action=action,
        entity_type="leave_request",
        entity_id=leave_request.id,
        details={
            "status": leave_request.status.value,
            "leave_type_id": leave_request.leave_type_id,
            "units": leave_request.units,
            "current_step": leave_request.current_step,
        },
    )


@router.post("/api/leave-requests", response_model=LeaveRequestRead, status_code=status.HTTP_201_CREATED)
def create_leave_request(
    payload: LeaveRequestCreate,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> LeaveRequestRead:
    leave_request = submit_leave_request(
        db,
        user_id=actor.user_id,
        leave_type_id=payload.leave_type_id,
        units=payload.units,
        start_date=payload.start_date,
        end_date=payload.end_date,
        note=payload.note,
    )
    _audit_transition(db, request, actor=actor, action="LEAVE_REQUEST_SUBMITTED", leave_request=leave_request)
    return LeaveRequestRead.model_validate(leave_request)


@router.post("/api/leave-requests/{request_id}/approve", response_model=LeaveRequestRead)
def approve_request(
    request_id: int,
    payload: LeaveRequestDecision,
    request: Request,
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db),
) -> LeaveRequestRead:
    leave_request = approve_leave_request(db, request_id=request_id, approver_id=actor.user_id, note=payload.note)
    _audit_transition(db, request, actor=actor, action="LEAVE_REQUEST_APPROVED", leave_request=leave_request)
    return LeaveRequestRead.model_validate(leave_request)


@router.post("/api/leave-requests/{request_id}/reject", response_model=LeaveRequestRead)
def reject_request(
    request_id: int,
    payload: LeaveRequestDecision,
    request: Request,
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db),
) -> LeaveRequestRead:
    leave_request = reject_leave_request(db, request_id=request_id, approver_id=actor.user_id, note=payload.note)
    _audit_transition(db, request, actor=actor, action="LEAVE_REQUEST_REJECTED", leave_request=leave_request)
    return LeaveRequestRead.model_validate(leave_request)


@router.post("/api/leave-requests/{request_id}/withdraw", response_model=LeaveRequestRead)
def withdraw_request(
    request_id: int,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> LeaveRequestRead:
    leave_request = withdraw_leave_request(db, request_id=request_id, user_id=actor.user_id)
    _audit_transition(db, request, actor=actor, action="LEAVE_REQUEST_WITHDRAWN", leave_request=leave_request)
    return LeaveRequestRead.model_validate(leave_request)


@router.delete("/api/leave-requests/{request_id}", response_model=LeaveRequestRead)
def delete_request(
    request_id: int,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> LeaveRequestRead:
    leave_request = delete_leave_request(
        db,
        request_id=request_id,
        actor_id=actor.user_id,
        owner_id=None if actor.is_admin else actor.user_id,
    )
    _audit_transition(db, request, actor=actor, action="LEAVE_REQUEST_DELETED", leave_request=leave_request)
    return LeaveRequestRead.model_validate(leave_request)


@router.get("/api/leave/balance", response_model=list[LeaveBalanceRead])
def get_leave_balance(
    leave_type_id: str | None = Query(default=None, min_length=1, max_length=64),
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> list[LeaveBalanceRead]:
    if leave_type_id is not None:
        balances = [get_balance(db, user_id=actor.user_id, leave_type_id=leave_type_id)]
    else:
        balances = list_balances(db, user_id=actor.user_id)
    return [LeaveBalanceRead.model_validate(item) for item in balances]
