from __future__ import annotations

import enum
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class ErrorKind(str, enum.Enum):
    VALIDATION = "validation"
    CONFLICT = "conflict"
    RESOURCE = "resource"
    NOT_FOUND = "not_found"


class EngineError(Exception):
    """Base of every error the attendance and leave engines raise.

    The set of subclasses is closed: callers dispatch on ``code`` (or on the
    class) and read ``details`` for the values needed to explain the failure.
    Nothing is committed when one of these is raised.
    """

    code: str = "ENGINE_ERROR"
    kind: ErrorKind = ErrorKind.VALIDATION
    default_message: str = "Operation rejected."

    def __init__(self, message: str | None = None, **details: Any) -> None:
        self.message = message or self.default_message
        self.details: dict[str, Any] = details
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "kind": self.kind.value,
            "message": self.message,
            "details": dict(self.details),
        }


# -- validation -------------------------------------------------------------


class InvalidClockRecord(EngineError):
    code = "INVALID_CLOCK_RECORD"
    default_message = "Clock record has an invalid shape."


class InvalidInterval(EngineError):
    code = "INVALID_INTERVAL"
    default_message = "Interval end precedes its start or falls outside its session."


class MissingEditReason(EngineError):
    code = "MISSING_EDIT_REASON"
    default_message = "An edit reason is required for corrections."


class AlreadyWorking(EngineError):
    code = "ALREADY_WORKING"
    default_message = "An open session already exists. Clock out first."


class NotWorking(EngineError):
    code = "NOT_WORKING"
    default_message = "No open session exists. Clock in first."


class BreakAlreadyActive(EngineError):
    code = "BREAK_ALREADY_ACTIVE"
    default_message = "A break is already in progress."


class NoActiveBreak(EngineError):
    code = "NO_ACTIVE_BREAK"
    default_message = "No break is in progress."


class InvalidUnits(EngineError):
    code = "INVALID_UNITS"
    default_message = "Units must be a positive integer."


class UnknownWorkType(EngineError):
    code = "UNKNOWN_WORK_TYPE"
    default_message = "Work type does not exist."


class InvalidRequestTransition(EngineError):
    code = "INVALID_REQUEST_TRANSITION"
    default_message = "The request cannot move to the requested status."


# -- conflict ---------------------------------------------------------------


class ConcurrentUpdateConflict(EngineError):
    code = "CONCURRENT_UPDATE_CONFLICT"
    kind = ErrorKind.CONFLICT
    default_message = "The record was changed concurrently. Retry the operation."


class RecordSuperseded(EngineError):
    code = "RECORD_SUPERSEDED"
    kind = ErrorKind.CONFLICT
    default_message = "The record already has a newer correction."


class HoldConflict(EngineError):
    code = "HOLD_CONFLICT"
    kind = ErrorKind.CONFLICT
    default_message = "A hold for this request already exists with different parameters."


class HistoryCycle(EngineError):
    code = "HISTORY_CYCLE"
    kind = ErrorKind.CONFLICT
    default_message = "The correction chain contains a cycle."


# -- resource ---------------------------------------------------------------


class InsufficientBalance(EngineError):
    code = "INSUFFICIENT_BALANCE"
    kind = ErrorKind.RESOURCE
    default_message = "Leave balance is not sufficient for this request."


class NoActiveHold(EngineError):
    code = "NO_ACTIVE_HOLD"
    kind = ErrorKind.RESOURCE
    default_message = "No hold exists for this request."


class HoldAlreadyReleased(EngineError):
    code = "HOLD_ALREADY_RELEASED"
    kind = ErrorKind.RESOURCE
    default_message = "The hold was already released."


class HoldAlreadyFinalized(EngineError):
    code = "HOLD_ALREADY_FINALIZED"
    kind = ErrorKind.RESOURCE
    default_message = "The hold was already finalized."


# -- not found --------------------------------------------------------------


class RecordNotFound(EngineError):
    code = "RECORD_NOT_FOUND"
    kind = ErrorKind.NOT_FOUND
    default_message = "Record not found."


ENGINE_ERROR_STATUS: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 422,
    ErrorKind.CONFLICT: 409,
    ErrorKind.RESOURCE: 409,
    ErrorKind.NOT_FOUND: 404,
}


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    payload: dict[str, Any] = {
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
        }
    }
    if details:
        payload["error"]["details"] = jsonable_encoder(details)
    return JSONResponse(status_code=status_code, content=payload)
