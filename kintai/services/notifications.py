from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from kintai.models import LeaveRequestStatus, NotificationJob

logger = logging.getLogger("kintai.notifications")

LEAVE_STATUS_JOB_TYPE = "LEAVE_REQUEST_STATUS_CHANGED"
JOB_STATUS_PENDING = "PENDING"


def leave_status_idempotency_key(request_id: int, new_status: LeaveRequestStatus | str) -> str:
    status_value = new_status.value if isinstance(new_status, LeaveRequestStatus) else str(new_status)
    return f"leave_request:{request_id}:{status_value}"


def enqueue_leave_status_job(
    db: Session,
    *,
    request_id: int,
    user_id: str,
    new_status: LeaveRequestStatus | str,
    now: datetime | None = None,
) -> NotificationJob:
    idempotency_key = leave_status_idempotency_key(request_id, new_status)
    existing = db.scalar(select(NotificationJob).where(NotificationJob.idempotency_key == idempotency_key))
    if existing is not None:
        return existing

    status_value = new_status.value if isinstance(new_status, LeaveRequestStatus) else str(new_status)
    job = NotificationJob(
        user_id=user_id,
        job_type=LEAVE_STATUS_JOB_TYPE,
        payload={"request_id": request_id, "status": status_value},
        scheduled_at_utc=now or datetime.now(timezone.utc),
        status=JOB_STATUS_PENDING,
        attempts=0,
        idempotency_key=idempotency_key,
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    return job


def notify_status_change(
    db: Session,
    *,
    request_id: int,
    user_id: str,
    new_status: LeaveRequestStatus | str,
) -> NotificationJob | None:
    """Queue a status-change notification without failing the caller.

    The ledger transition that triggered this is already committed, so an
    outbox failure is logged and dropped.
    """
    try:
        return enqueue_leave_status_job(db, request_id=request_id, user_id=user_id, new_status=new_status)
    except SQLAlchemyError:
        db.rollback()
        logger.exception(
            "notification_enqueue_failed",
            extra={
                "request_id": request_id,
                "user_id": user_id,
                "status": new_status.value if isinstance(new_status, LeaveRequestStatus) else str(new_status),
            },
        )
        return None


def list_pending_jobs(db: Session, *, limit: int = 100) -> list[NotificationJob]:
    stmt = (
        select(NotificationJob)
        .where(NotificationJob.status == JOB_STATUS_PENDING)
        .order_by(NotificationJob.scheduled_at_utc.asc(), NotificationJob.id.asc())
        .limit(limit)
    )
    return list(db.scalars(stmt).all())
