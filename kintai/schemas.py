from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from kintai.models import AttendanceStatus, LeaveHoldStatus, LeaveRequestStatus


class BreakIntervalPayload(BaseModel):
    break_start: datetime
    break_end: datetime | None = None


class ClockSessionPayload(BaseModel):
    in_time: datetime
    out_time: datetime | None = None
    breaks: list[BreakIntervalPayload] = Field(default_factory=list)


class ClockEventRequest(BaseModel):
    ts: datetime | None = None


class ClockInRequest(ClockEventRequest):
    work_type_id: int | None = Field(default=None, ge=1)


class AttendanceRecordRead(BaseModel):
    id: int
    user_id: str
    work_date: date
    clock_records: list[ClockSessionPayload] = Field(default_factory=list)
    work_type_id: int | None = None
    actual_work_minutes: int
    break_minutes: int
    overtime_minutes: int
    late_minutes: int
    early_leave_minutes: int
    status: AttendanceStatus
    flags: dict[str, Any] = Field(default_factory=dict)
    source_id: int | None = None
    edit_reason: str | None = None
    edited_by: str | None = None
    approved_by: str | None = None
    approved_at: datetime | None = None
    version: int
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class ClockActionResponse(BaseModel):
    ok: bool = True
    action: str
    state: str
    replayed: bool = False
    record: AttendanceRecordRead


class AttendanceTodayResponse(BaseModel):
    user_id: str
    state: str
    record: AttendanceRecordRead | None = None


class AttendanceCorrectionRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=1000)
    clock_records: list[ClockSessionPayload] | None = None
    work_type_id: int | None = Field(default=None, ge=1)
    work_date: date | None = None

    def to_changes(self) -> dict[str, Any]:
        changes: dict[str, Any] = {}
        if "clock_records" in self.model_fields_set and self.clock_records is not None:
            changes["clock_records"] = [item.model_dump(mode="json") for item in self.clock_records]
        if "work_type_id" in self.model_fields_set:
            changes["work_type_id"] = self.work_type_id
        if "work_date" in self.model_fields_set and self.work_date is not None:
            changes["work_date"] = self.work_date
        return changes


class AttendanceRecomputeRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=1000)


class FieldChangeRead(BaseModel):
    field_name: str
    old_value: Any = None
    new_value: Any = None

    model_config = ConfigDict(from_attributes=True)


class AttendanceHistoryEntry(BaseModel):
    record: AttendanceRecordRead
    changes: list[FieldChangeRead] = Field(default_factory=list)


class AttendanceHistoryResponse(BaseModel):
    record_id: int
    entries: list[AttendanceHistoryEntry]


class DaySummaryRead(BaseModel):
    record_id: int
    work_date: date
    status: AttendanceStatus
    actual_work_minutes: int
    break_minutes: int
    overtime_minutes: int
    late_minutes: int
    early_leave_minutes: int
    flags: dict[str, Any] = Field(default_factory=dict)
    corrected: bool = False

    model_config = ConfigDict(from_attributes=True)


class MonthlySummaryRead(BaseModel):
    user_id: str
    year: int
    month: int
    days: list[DaySummaryRead]
    worked_days: int
    total_actual_work_minutes: int
    total_break_minutes: int
    total_overtime_minutes: int
    total_late_minutes: int
    total_early_leave_minutes: int
    status_counts: dict[str, int]
    flagged_days: int

    model_config = ConfigDict(from_attributes=True)


class LeaveRequestCreate(BaseModel):
    leave_type_id: str = Field(min_length=1, max_length=64)
    units: int = Field(ge=1)
    start_date: date
    end_date: date
    note: str | None = Field(default=None, max_length=1000)


class LeaveRequestDecision(BaseModel):
    note: str | None = Field(default=None, max_length=1000)


class LeaveRequestRead(BaseModel):
    id: int
    user_id: str
    leave_type_id: str
    units: int
    start_date: date
    end_date: date
    status: LeaveRequestStatus
    approval_steps: int
    current_step: int
    decided_by: str | None = None
    decided_at: datetime | None = None
    note: str | None = None
    created_at: datetime | None = None
    deleted_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class LeaveBalanceRead(BaseModel):
    user_id: str
    leave_type_id: str
    available_units: int
    held_units: int
    consumed_units: int
    total_units: int

    model_config = ConfigDict(from_attributes=True)


class LeaveGrantCreate(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)
    leave_type_id: str = Field(min_length=1, max_length=64)
    units: int = Field(ge=1)
    granted_on: date | None = None
    expires_on: date | None = None
    note: str | None = Field(default=None, max_length=1000)


class LeaveGrantRead(BaseModel):
    id: int
    user_id: str
    leave_type_id: str
    units: int
    granted_on: date
    expires_on: date | None = None
    lapsed_units: int = 0
    note: str | None = None
    created_by: str

    model_config = ConfigDict(from_attributes=True)


class GrantLapseRead(BaseModel):
    grant_id: int
    user_id: str
    leave_type_id: str
    expires_on: date
    lapsed_units: int

    model_config = ConfigDict(from_attributes=True)


class LeaveHoldRead(BaseModel):
    id: int
    request_id: int
    user_id: str
    leave_type_id: str
    units_held: int
    status: LeaveHoldStatus
    created_by: str | None = None
    resolved_by: str | None = None
    created_at: datetime | None = None
    resolved_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)
