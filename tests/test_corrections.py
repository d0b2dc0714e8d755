from __future__ import annotations

import unittest
from datetime import date, datetime
from unittest.mock import patch
from zoneinfo import ZoneInfo

from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from kintai.db import Base
from kintai.errors import (
    HistoryCycle,
    InvalidClockRecord,
    InvalidInterval,
    MissingEditReason,
    RecordNotFound,
    RecordSuperseded,
    UnknownWorkType,
)
from kintai.models import AttendanceRecord, WorkType
from kintai.services.attendance import clock_in, clock_out, get_today
from kintai.services.corrections import (
    apply_correction,
    diff,
    history,
    history_with_changes,
    recompute_record,
)
from kintai.services.monthly import summarize_month

JST = ZoneInfo("Asia/Tokyo")
USER_ID = "emp-002"
ADMIN_ID = "admin-1"


def _jst(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 4, 1, hour, minute, tzinfo=JST)


class AttendanceCorrectionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine(
            "sqlite+pysqlite:///:memory:",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(self.engine)
        self.db = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)()

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def _worked_day(self, work_type_id: int | None = None) -> AttendanceRecord:
        clock_in(self.db, user_id=USER_ID, ts=_jst(9, 0), work_type_id=work_type_id)
        return clock_out(self.db, user_id=USER_ID, ts=_jst(18, 0)).record

    def _row_count(self) -> int:
        return int(self.db.scalar(select(func.count()).select_from(AttendanceRecord)) or 0)

    def test_noop_correction_appends_identical_row(self) -> None:
        original = self._worked_day()

        corrected = apply_correction(
            self.db,
            original_id=original.id,
            changes={},
            editor_id=ADMIN_ID,
            reason="monthly review",
        )

        self.assertNotEqual(corrected.id, original.id)
        self.assertEqual(corrected.source_id, original.id)
        self.assertEqual(corrected.edit_reason, "monthly review")
        self.assertEqual(corrected.edited_by, ADMIN_ID)
        self.assertEqual(corrected.actual_work_minutes, original.actual_work_minutes)
        self.assertEqual(diff(original, corrected), [])
        self.assertEqual(self._row_count(), 2)

    def test_correction_recomputes_and_leaves_original_untouched(self) -> None:
        original = self._worked_day()
        before = (list(original.clock_records), original.actual_work_minutes, original.version)

        corrected = apply_correction(
            self.db,
            original_id=original.id,
            changes={
                "clock_records": [
                    {
                        "in_time": "2026-04-01T10:00:00+09:00",
                        "out_time": "2026-04-01T19:00:00+09:00",
                        "breaks": [
                            {
                                "break_start": "2026-04-01T13:00:00+09:00",
                                "break_end": "2026-04-01T14:00:00+09:00",
                            }
                        ],
                    }
                ]
            },
            editor_id=ADMIN_ID,
            reason="forgot to record lunch",
        )

        self.assertEqual(corrected.actual_work_minutes, 480)
        self.assertEqual(corrected.break_minutes, 60)
        self.assertEqual(corrected.overtime_minutes, 0)
        changed = {item.field_name for item in diff(original, corrected)}
        self.assertEqual(changed, {"clock_records", "break_minutes", "actual_work_minutes", "overtime_minutes"})

        self.db.expire_all()
        reloaded = self.db.get(AttendanceRecord, original.id)
        self.assertEqual((reloaded.clock_records, reloaded.actual_work_minutes, reloaded.version), before)

    def test_second_correction_of_same_row_is_rejected(self) -> None:
        original = self._worked_day()
        first = apply_correction(self.db, original_id=original.id, changes={}, editor_id=ADMIN_ID, reason="a")

        with self.assertRaises(RecordSuperseded) as ctx:
            apply_correction(self.db, original_id=original.id, changes={}, editor_id=ADMIN_ID, reason="b")

        self.assertEqual(ctx.exception.details["successor_id"], first.id)
        self.assertEqual(self._row_count(), 2)

    def test_reason_is_required(self) -> None:
        original = self._worked_day()
        for reason in (None, "", "   "):
            with self.assertRaises(MissingEditReason):
                apply_correction(self.db, original_id=original.id, changes={}, editor_id=ADMIN_ID, reason=reason)
        self.assertEqual(self._row_count(), 1)

    def test_invalid_corrections_insert_nothing(self) -> None:
        original = self._worked_day()

        with self.assertRaises(RecordNotFound):
            apply_correction(self.db, original_id=9999, changes={}, editor_id=ADMIN_ID, reason="x")
        with self.assertRaises(InvalidClockRecord):
            apply_correction(
                self.db,
                original_id=original.id,
                changes={"actual_work_minutes": 999},
                editor_id=ADMIN_ID,
                reason="x",
            )
        with self.assertRaises(InvalidInterval):
            apply_correction(
                self.db,
                original_id=original.id,
                changes={
                    "clock_records": [
                        {"in_time": "2026-04-01T18:00:00+09:00", "out_time": "2026-04-01T09:00:00+09:00"}
                    ]
                },
                editor_id=ADMIN_ID,
                reason="x",
            )
        self.assertEqual(self._row_count(), 1)

    def test_work_date_cannot_be_moved_by_correction(self) -> None:
        first_day = self._worked_day()
        clock_in(self.db, user_id=USER_ID, ts=datetime(2026, 4, 2, 9, 0, tzinfo=JST))
        clock_out(self.db, user_id=USER_ID, ts=datetime(2026, 4, 2, 17, 0, tzinfo=JST))

        with self.assertRaises(InvalidClockRecord) as ctx:
            apply_correction(
                self.db,
                original_id=first_day.id,
                changes={"work_date": date(2026, 4, 2)},
                editor_id=ADMIN_ID,
                reason="wrong day",
            )
        self.assertEqual(ctx.exception.details["fields"], ["work_date"])
        self.assertEqual(self._row_count(), 2)

        summary = summarize_month(self.db, user_id=USER_ID, year=2026, month=4)
        self.assertEqual([day.work_date for day in summary.days], [date(2026, 4, 1), date(2026, 4, 2)])
        self.assertEqual(summary.total_actual_work_minutes, 1020)

        result = clock_in(self.db, user_id=USER_ID, ts=_jst(20, 0))
        self.assertEqual(result.record.id, first_day.id)
        record, _state = get_today(self.db, user_id=USER_ID, now=_jst(21, 0))
        self.assertEqual(len(record.clock_records), 2)

    def test_unknown_work_type_is_a_validation_error(self) -> None:
        original = self._worked_day()

        with self.assertRaises(UnknownWorkType) as ctx:
            apply_correction(
                self.db,
                original_id=original.id,
                changes={"work_type_id": 9999},
                editor_id=ADMIN_ID,
                reason="x",
            )

        self.assertEqual(ctx.exception.details, {"work_type_id": 9999})
        self.assertEqual(self._row_count(), 1)

    def test_integrity_error_without_successor_is_not_reported_as_superseded(self) -> None:
        original = self._worked_day()
        failure = IntegrityError("INSERT INTO attendance_records", {}, Exception("CHECK constraint failed"))

        with patch.object(self.db, "commit", side_effect=failure):
            with self.assertRaises(IntegrityError):
                apply_correction(self.db, original_id=original.id, changes={}, editor_id=ADMIN_ID, reason="x")

        self.assertEqual(self._row_count(), 1)

    def test_history_walks_whole_chain_oldest_first(self) -> None:
        work_type = WorkType(name="Office", overtime_threshold_minutes=480)
        self.db.add(work_type)
        self.db.commit()
        original = self._worked_day()
        second = apply_correction(self.db, original_id=original.id, changes={}, editor_id=ADMIN_ID, reason="a")
        third = apply_correction(
            self.db,
            original_id=second.id,
            changes={"work_type_id": work_type.id},
            editor_id=ADMIN_ID,
            reason="wrong work type",
        )

        for start in (original.id, second.id, third.id):
            chain = history(self.db, start)
            self.assertEqual([item.id for item in chain], [original.id, second.id, third.id])
            self.assertIsNone(chain[0].source_id)

        entries = history_with_changes(self.db, original.id)
        self.assertEqual(entries[0][1], [])
        self.assertEqual(entries[1][1], [])
        self.assertEqual([item.field_name for item in entries[2][1]], ["work_type_id"])

    def test_history_of_unknown_record(self) -> None:
        with self.assertRaises(RecordNotFound):
            history(self.db, 4242)

    def test_history_detects_cycles(self) -> None:
        first = AttendanceRecord(
            user_id=USER_ID,
            work_date=date(2026, 4, 3),
            clock_records=[],
            edit_reason="x",
            edited_by=ADMIN_ID,
        )
        self.db.add(first)
        self.db.flush()
        second = AttendanceRecord(
            user_id=USER_ID,
            work_date=date(2026, 4, 3),
            clock_records=[],
            source_id=first.id,
            edit_reason="y",
            edited_by=ADMIN_ID,
        )
        self.db.add(second)
        self.db.flush()
        first.source_id = second.id
        self.db.commit()

        with self.assertRaises(HistoryCycle):
            history(self.db, first.id)

    def test_clock_events_after_correction_update_the_head(self) -> None:
        original = self._worked_day()
        corrected = apply_correction(self.db, original_id=original.id, changes={}, editor_id=ADMIN_ID, reason="a")

        result = clock_in(self.db, user_id=USER_ID, ts=_jst(20, 0))

        self.assertEqual(result.record.id, corrected.id)
        self.assertEqual(len(result.record.clock_records), 2)
        self.db.expire_all()
        self.assertEqual(len(self.db.get(AttendanceRecord, original.id).clock_records), 1)

    def test_recompute_applies_current_policy(self) -> None:
        work_type = WorkType(name="Short day", overtime_threshold_minutes=480)
        self.db.add(work_type)
        self.db.commit()
        original = self._worked_day(work_type_id=work_type.id)
        self.assertEqual(original.overtime_minutes, 60)

        work_type.overtime_threshold_minutes = 420
        self.db.commit()
        recomputed = recompute_record(self.db, record_id=original.id, editor_id=ADMIN_ID, reason="policy change")

        self.assertEqual(recomputed.source_id, original.id)
        self.assertEqual(recomputed.overtime_minutes, 120)
        self.assertEqual([item.field_name for item in diff(original, recomputed)], ["overtime_minutes"])


if __name__ == "__main__":
    unittest.main()
