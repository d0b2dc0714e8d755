from __future__ import annotations

from datetime import date, datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from kintai.errors import EngineError, InvalidInterval, InvalidRequestTransition, InvalidUnits, RecordNotFound
from kintai.models import LeaveRequest, LeaveRequestStatus
from kintai.services import leave_ledger
from kintai.services.notifications import notify_status_change
from kintai.settings import get_settings


def _get_request_for_update(db: Session, request_id: int, *, user_id: str | None = None) -> LeaveRequest:
    leave_request = db.scalar(
        select(LeaveRequest)
        .where(LeaveRequest.id == request_id, LeaveRequest.deleted_at.is_(None))
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if leave_request is None or (user_id is not None and leave_request.user_id != user_id):
        db.rollback()
        raise RecordNotFound(request_id=request_id)
    return leave_request


def _transition_error(leave_request: LeaveRequest, target: LeaveRequestStatus) -> InvalidRequestTransition:
    return InvalidRequestTransition(
        request_id=leave_request.id,
        current_status=leave_request.status.value,
        requested_status=target.value,
    )


def _unchanged(db: Session, leave_request: LeaveRequest, target: LeaveRequestStatus) -> LeaveRequest:
    """Answer a transition that needs no write, releasing the row lock first."""
    error = None if leave_request.status == target else _transition_error(leave_request, target)
    db.rollback()
    if error is not None:
        raise error
    return leave_request


def _close_request(
    db: Session,
    leave_request: LeaveRequest,
    *,
    status: LeaveRequestStatus,
    actor_id: str,
    note: str | None,
) -> LeaveRequest:
    leave_request.status = status
    leave_request.decided_by = actor_id
    leave_request.decided_at = datetime.now(timezone.utc)
    if note:
        leave_request.note = note
    db.commit()
    db.refresh(leave_request)
    notify_status_change(db, request_id=leave_request.id, user_id=leave_request.user_id, new_status=status)
    return leave_request


def submit_leave_request(
    db: Session,
    *,
    user_id: str,
    leave_type_id: str,
    units: int,
    start_date: date,
    end_date: date,
    note: str | None = None,
    approval_steps: int | None = None,
) -> LeaveRequest:
    """Create a pending request and reserve its units in the same transaction."""
    if isinstance(units, bool) or not isinstance(units, int) or units <= 0:
        raise InvalidUnits(units=units)
    if end_date < start_date:
        raise InvalidInterval(
            "end_date precedes start_date.",
            start_date=start_date.isoformat(),
            end_date=end_date.isoformat(),
        )

    steps = approval_steps if approval_steps is not None else get_settings().leave_approval_steps
    leave_request = LeaveRequest(
        user_id=user_id,
        leave_type_id=leave_type_id,
        units=units,
        start_date=start_date,
        end_date=end_date,
        status=LeaveRequestStatus.PENDING,
        approval_steps=max(1, steps),
        current_step=0,
        note=note,
    )
    db.add(leave_request)
    db.flush()

    # hold() commits the request row together with the reservation.
    try:
        leave_ledger.hold(
            db,
            request_id=leave_request.id,
            user_id=user_id,
            leave_type_id=leave_type_id,
            units=units,
            actor_id=user_id,
        )
    except EngineError:
        db.rollback()
        raise
    db.refresh(leave_request)
    notify_status_change(
        db,
        request_id=leave_request.id,
        user_id=user_id,
        new_status=LeaveRequestStatus.PENDING,
    )
    return leave_request


def approve_leave_request(
    db: Session,
    *,
    request_id: int,
    approver_id: str,
    note: str | None = None,
) -> LeaveRequest:
    leave_request = _get_request_for_update(db, request_id)
    if leave_request.status != LeaveRequestStatus.PENDING:
        return _unchanged(db, leave_request, LeaveRequestStatus.APPROVED)

    next_step = leave_request.current_step + 1
    if next_step < leave_request.approval_steps:
        leave_request.current_step = next_step
        if note:
            leave_request.note = note
        db.commit()
        db.refresh(leave_request)
        return leave_request

    leave_ledger.finalize(db, request_id=leave_request.id, actor_id=approver_id)
    leave_request = _get_request_for_update(db, request_id)
    leave_request.current_step = leave_request.approval_steps
    return _close_request(
        db,
        leave_request,
        status=LeaveRequestStatus.APPROVED,
        actor_id=approver_id,
        note=note,
    )


def _release_and_close(
    db: Session,
    *,
    request_id: int,
    target: LeaveRequestStatus,
    actor_id: str,
    owner_id: str | None = None,
    note: str | None = None,
) -> LeaveRequest:
    leave_request = _get_request_for_update(db, request_id, user_id=owner_id)
    if leave_request.status != LeaveRequestStatus.PENDING:
        return _unchanged(db, leave_request, target)

    leave_ledger.release(db, request_id=leave_request.id, actor_id=actor_id)
    leave_request = _get_request_for_update(db, request_id, user_id=owner_id)
    return _close_request(db, leave_request, status=target, actor_id=actor_id, note=note)


def reject_leave_request(
    db: Session,
    *,
    request_id: int,
    approver_id: str,
    note: str | None = None,
) -> LeaveRequest:
    return _release_and_close(
        db,
        request_id=request_id,
        target=LeaveRequestStatus.REJECTED,
        actor_id=approver_id,
        note=note,
    )


def withdraw_leave_request(db: Session, *, request_id: int, user_id: str) -> LeaveRequest:
    return _release_and_close(
        db,
        request_id=request_id,
        target=LeaveRequestStatus.WITHDRAWN,
        actor_id=user_id,
        owner_id=user_id,
    )


def delete_leave_request(db: Session, *, request_id: int, actor_id: str, owner_id: str | None = None) -> LeaveRequest:
    """Logically delete a request, releasing its hold first while it is pending."""
    leave_request = _get_request_for_update(db, request_id, user_id=owner_id)
    if leave_request.status == LeaveRequestStatus.APPROVED:
        error = InvalidRequestTransition(
            "Approved requests cannot be deleted.",
            request_id=leave_request.id,
            current_status=leave_request.status.value,
        )
        db.rollback()
        raise error

    was_pending = leave_request.status == LeaveRequestStatus.PENDING
    if was_pending:
        leave_ledger.release(db, request_id=leave_request.id, actor_id=actor_id)
        leave_request = _get_request_for_update(db, request_id, user_id=owner_id)
        leave_request.status = LeaveRequestStatus.WITHDRAWN
        leave_request.decided_by = actor_id
        leave_request.decided_at = datetime.now(timezone.utc)

    leave_request.deleted_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(leave_request)
    if was_pending:
        notify_status_change(
            db,
            request_id=leave_request.id,
            user_id=leave_request.user_id,
            new_status=LeaveRequestStatus.WITHDRAWN,
        )
    return leave_request


def list_leave_requests(
    db: Session,
    *,
    user_id: str | None = None,
    status: LeaveRequestStatus | None = None,
) -> list[LeaveRequest]:
    stmt = select(LeaveRequest).where(LeaveRequest.deleted_at.is_(None))
    if user_id is not None:
        stmt = stmt.where(LeaveRequest.user_id == user_id)
    if status is not None:
        stmt = stmt.where(LeaveRequest.status == status)
    stmt = stmt.order_by(LeaveRequest.start_date.asc(), LeaveRequest.id.asc())
    return list(db.scalars(stmt).all())
