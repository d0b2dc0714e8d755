from __future__ import annotations

import os
import shutil
import tempfile
import unittest
from datetime import date, datetime, time
from unittest.mock import patch
from zoneinfo import ZoneInfo

from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.pool import StaticPool

from kintai.db import Base
from kintai.errors import (
    AlreadyWorking,
    BreakAlreadyActive,
    ConcurrentUpdateConflict,
    InvalidInterval,
    NoActiveBreak,
    NotWorking,
    UnknownWorkType,
)
from kintai.models import AttendanceRecord, AttendanceStatus, WorkType
from kintai.services import attendance as attendance_service
from kintai.services.attendance import (
    DayState,
    clock_in,
    clock_out,
    end_break,
    get_today,
    start_break,
)
from kintai.services.time_calc import FLAG_OPEN_BREAK_AT_CLOCK_OUT

JST = ZoneInfo("Asia/Tokyo")
USER_ID = "emp-001"


def _jst(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 4, 1, hour, minute, tzinfo=JST)


def _memory_session():  # type: ignore[no-untyped-def]
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine, sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()


class AttendanceStateMachineTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine, self.db = _memory_session()

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def _row_count(self) -> int:
        return int(self.db.scalar(select(func.count()).select_from(AttendanceRecord)) or 0)

    def test_full_day_with_lunch_break(self) -> None:
        first = clock_in(self.db, user_id=USER_ID, ts=_jst(9, 0))
        self.assertEqual(first.state, DayState.WORKING)
        self.assertEqual(first.record.status, AttendanceStatus.IN_PROGRESS)
        self.assertEqual(first.record.work_date, date(2026, 4, 1))

        self.assertEqual(start_break(self.db, user_id=USER_ID, ts=_jst(12, 0)).state, DayState.ON_BREAK)
        self.assertEqual(end_break(self.db, user_id=USER_ID, ts=_jst(12, 30)).state, DayState.WORKING)
        result = clock_out(self.db, user_id=USER_ID, ts=_jst(18, 0))

        record = result.record
        self.assertEqual(result.state, DayState.CLOCKED_OUT)
        self.assertEqual(record.actual_work_minutes, 510)
        self.assertEqual(record.break_minutes, 30)
        self.assertEqual(record.overtime_minutes, 30)
        self.assertEqual(record.status, AttendanceStatus.NORMAL)
        self.assertEqual(record.flags, {})
        self.assertEqual(self._row_count(), 1)

    def test_eight_hours_without_break_has_no_overtime(self) -> None:
        clock_in(self.db, user_id=USER_ID, ts=_jst(9, 0))
        record = clock_out(self.db, user_id=USER_ID, ts=_jst(17, 0)).record

        self.assertEqual(record.actual_work_minutes, 480)
        self.assertEqual(record.overtime_minutes, 0)

    def test_clock_in_after_clock_out_opens_second_session(self) -> None:
        clock_in(self.db, user_id=USER_ID, ts=_jst(9, 0))
        clock_out(self.db, user_id=USER_ID, ts=_jst(12, 0))
        clock_in(self.db, user_id=USER_ID, ts=_jst(13, 0))
        record = clock_out(self.db, user_id=USER_ID, ts=_jst(17, 0)).record

        self.assertEqual(len(record.clock_records), 2)
        self.assertEqual(record.actual_work_minutes, 180 + 240)
        self.assertEqual(self._row_count(), 1)

    def test_replayed_event_is_a_noop(self) -> None:
        clock_in(self.db, user_id=USER_ID, ts=_jst(9, 0))
        first = clock_out(self.db, user_id=USER_ID, ts=_jst(18, 0))
        version = first.record.version

        replay = clock_out(self.db, user_id=USER_ID, ts=_jst(18, 0))

        self.assertTrue(replay.replayed)
        self.assertEqual(replay.record.id, first.record.id)
        self.assertEqual(replay.record.version, version)
        self.assertEqual(self._row_count(), 1)

    def test_second_clock_in_while_working_is_rejected(self) -> None:
        clock_in(self.db, user_id=USER_ID, ts=_jst(9, 0))
        with self.assertRaises(AlreadyWorking):
            clock_in(self.db, user_id=USER_ID, ts=_jst(9, 5))

    def test_events_before_clock_in_are_rejected(self) -> None:
        with self.assertRaises(NotWorking):
            start_break(self.db, user_id=USER_ID, ts=_jst(12, 0))
        with self.assertRaises(NotWorking):
            clock_out(self.db, user_id=USER_ID, ts=_jst(18, 0))
        with self.assertRaises(NoActiveBreak):
            end_break(self.db, user_id=USER_ID, ts=_jst(12, 30))
        self.assertEqual(self._row_count(), 0)

    def test_break_guards(self) -> None:
        clock_in(self.db, user_id=USER_ID, ts=_jst(9, 0))
        with self.assertRaises(NoActiveBreak):
            end_break(self.db, user_id=USER_ID, ts=_jst(10, 0))

        start_break(self.db, user_id=USER_ID, ts=_jst(12, 0))
        with self.assertRaises(BreakAlreadyActive):
            start_break(self.db, user_id=USER_ID, ts=_jst(12, 10))

    def test_clock_out_before_clock_in_time_is_rejected(self) -> None:
        clock_in(self.db, user_id=USER_ID, ts=_jst(9, 0))
        with self.assertRaises(InvalidInterval):
            clock_out(self.db, user_id=USER_ID, ts=_jst(8, 0))

        record, state = get_today(self.db, user_id=USER_ID, now=_jst(10, 0))
        self.assertIsNotNone(record)
        self.assertEqual(state, DayState.WORKING)

    def test_open_break_at_clock_out_is_flagged(self) -> None:
        clock_in(self.db, user_id=USER_ID, ts=_jst(9, 0))
        start_break(self.db, user_id=USER_ID, ts=_jst(15, 0))
        result = clock_out(self.db, user_id=USER_ID, ts=_jst(17, 0))

        record = result.record
        self.assertEqual(result.state, DayState.CLOCKED_OUT)
        self.assertEqual(record.break_minutes, 0)
        self.assertEqual(record.actual_work_minutes, 480)
        self.assertEqual(record.flags, {FLAG_OPEN_BREAK_AT_CLOCK_OUT: [0]})
        self.assertIsNone(record.clock_records[0]["breaks"][0]["break_end"])

    def test_work_type_schedule_marks_late_arrival(self) -> None:
        work_type = WorkType(
            name="Office",
            scheduled_start=time(9, 0),
            scheduled_end=time(18, 0),
            late_threshold_minutes=0,
            overtime_threshold_minutes=480,
        )
        self.db.add(work_type)
        self.db.commit()

        clock_in(self.db, user_id=USER_ID, ts=_jst(9, 20), work_type_id=work_type.id)
        record = clock_out(self.db, user_id=USER_ID, ts=_jst(18, 0)).record

        self.assertEqual(record.work_type_id, work_type.id)
        self.assertEqual(record.late_minutes, 20)
        self.assertEqual(record.status, AttendanceStatus.LATE)

    def test_get_today_without_record(self) -> None:
        record, state = get_today(self.db, user_id=USER_ID, now=_jst(8, 0))
        self.assertIsNone(record)
        self.assertEqual(state, DayState.NOT_STARTED)

    def test_persistent_write_conflicts_surface_after_retries(self) -> None:
        with patch.object(self.db, "commit", side_effect=StaleDataError("stale")):
            with self.assertRaises(ConcurrentUpdateConflict) as ctx:
                clock_in(self.db, user_id=USER_ID, ts=_jst(9, 0))

        self.assertEqual(ctx.exception.details["attempts"], 4)
        self.assertEqual(self._row_count(), 0)

    def test_clock_in_with_unknown_work_type_is_rejected(self) -> None:
        with self.assertRaises(UnknownWorkType) as ctx:
            clock_in(self.db, user_id=USER_ID, ts=_jst(9, 0), work_type_id=9999)

        self.assertEqual(ctx.exception.details, {"work_type_id": 9999})
        self.assertEqual(self._row_count(), 0)

    def test_integrity_errors_other_than_the_root_race_are_not_retried(self) -> None:
        failure = IntegrityError("INSERT INTO attendance_records", {}, Exception("FOREIGN KEY constraint failed"))
        with patch.object(self.db, "commit", side_effect=failure) as commit:
            with self.assertRaises(IntegrityError):
                clock_in(self.db, user_id=USER_ID, ts=_jst(9, 0))

        self.assertEqual(commit.call_count, 1)
        self.assertEqual(self._row_count(), 0)


class AttendanceConcurrencyTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.mkdtemp()
        self.engine = create_engine(f"sqlite+pysqlite:///{os.path.join(self.tmpdir, 'kintai.db')}")
        Base.metadata.create_all(self.engine)
        factory = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)
        self.db_a = factory()
        self.db_b = factory()

    def tearDown(self) -> None:
        self.db_a.close()
        self.db_b.close()
        self.engine.dispose()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_racing_clock_ins_create_one_session(self) -> None:
        real_head = attendance_service.head_record_for_day
        calls = {"count": 0}

        def stale_first_read(db, **kwargs):  # type: ignore[no-untyped-def]
            calls["count"] += 1
            if calls["count"] == 1:
                return None
            return real_head(db, **kwargs)

        clock_in(self.db_a, user_id=USER_ID, ts=_jst(9, 0))
        with patch("kintai.services.attendance.head_record_for_day", side_effect=stale_first_read):
            with self.assertRaises(AlreadyWorking):
                clock_in(self.db_b, user_id=USER_ID, ts=_jst(9, 1))

        rows = self.db_a.scalars(select(AttendanceRecord)).all()
        self.assertEqual(len(rows), 1)
        self.assertEqual(len(rows[0].clock_records), 1)

    def test_stale_writer_does_not_overwrite_newer_version(self) -> None:
        clock_in(self.db_a, user_id=USER_ID, ts=_jst(9, 0))
        get_today(self.db_b, user_id=USER_ID, now=_jst(9, 30))

        start_break(self.db_a, user_id=USER_ID, ts=_jst(12, 0))
        with self.assertRaises(BreakAlreadyActive):
            start_break(self.db_b, user_id=USER_ID, ts=_jst(12, 5))

        self.db_a.expire_all()
        record, state = get_today(self.db_a, user_id=USER_ID, now=_jst(12, 10))
        self.assertEqual(state, DayState.ON_BREAK)
        self.assertEqual(len(record.clock_records[0]["breaks"]), 1)


if __name__ == "__main__":
    unittest.main()
