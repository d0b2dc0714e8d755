from __future__ import annotations

import unittest
from datetime import date, datetime, time
from zoneinfo import ZoneInfo

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from kintai.db import Base
from kintai.models import WorkType
from kintai.services.clock_sessions import ClockSession
from kintai.services.work_types import (
    WorkTypePolicy,
    business_day,
    evaluate_schedule,
    get_work_type_policy,
)

JST = ZoneInfo("Asia/Tokyo")
DAY = date(2026, 4, 1)


def _jst(hour: int, minute: int = 0, day: int = 1) -> datetime:
    return datetime(2026, 4, day, hour, minute, tzinfo=JST)


def _policy(start: time | None = time(9, 0), end: time | None = time(18, 0), grace: int = 10) -> WorkTypePolicy:
    return WorkTypePolicy(
        work_type_id=1,
        overtime_threshold_minutes=480,
        scheduled_start=start,
        scheduled_end=end,
        late_threshold_minutes=grace,
    )


class EvaluateScheduleTests(unittest.TestCase):
    def test_clock_in_within_grace_is_not_late(self) -> None:
        sessions = [ClockSession(in_time=_jst(9, 5), out_time=_jst(18, 0))]
        self.assertEqual(evaluate_schedule(_policy(), DAY, sessions, JST), (0, 0))

    def test_late_minutes_count_from_scheduled_start(self) -> None:
        sessions = [ClockSession(in_time=_jst(9, 15), out_time=_jst(18, 0))]
        self.assertEqual(evaluate_schedule(_policy(), DAY, sessions, JST), (15, 0))

    def test_early_leave_after_last_session(self) -> None:
        sessions = [
            ClockSession(in_time=_jst(9, 0), out_time=_jst(12, 0)),
            ClockSession(in_time=_jst(13, 0), out_time=_jst(17, 30)),
        ]
        self.assertEqual(evaluate_schedule(_policy(), DAY, sessions, JST), (0, 30))

    def test_open_day_has_no_early_leave(self) -> None:
        sessions = [
            ClockSession(in_time=_jst(9, 0), out_time=_jst(12, 0)),
            ClockSession(in_time=_jst(13, 0)),
        ]
        self.assertEqual(evaluate_schedule(_policy(), DAY, sessions, JST), (0, 0))

    def test_overnight_schedule_ends_next_day(self) -> None:
        sessions = [ClockSession(in_time=_jst(22, 0), out_time=_jst(5, 0, day=2))]
        policy = _policy(start=time(22, 0), end=time(6, 0), grace=0)
        self.assertEqual(evaluate_schedule(policy, DAY, sessions, JST), (0, 60))

    def test_without_schedule_nothing_is_assessed(self) -> None:
        sessions = [ClockSession(in_time=_jst(11, 0), out_time=_jst(13, 0))]
        self.assertEqual(evaluate_schedule(_policy(start=None, end=None), DAY, sessions, JST), (0, 0))
        self.assertEqual(evaluate_schedule(_policy(), DAY, [], JST), (0, 0))


class BusinessDayTests(unittest.TestCase):
    def test_business_day_uses_local_calendar(self) -> None:
        self.assertEqual(business_day(_jst(0, 30, day=2), JST), date(2026, 4, 2))
        self.assertEqual(business_day(datetime(2026, 4, 1, 16, 0), JST), date(2026, 4, 2))


class WorkTypePolicyTests(unittest.TestCase):
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

    def test_active_work_type_policy_is_loaded(self) -> None:
        work_type = WorkType(
            name="Day shift",
            scheduled_start=time(9, 0),
            scheduled_end=time(18, 0),
            late_threshold_minutes=5,
            overtime_threshold_minutes=450,
        )
        self.db.add(work_type)
        self.db.commit()

        policy = get_work_type_policy(self.db, work_type.id)

        self.assertEqual(policy.work_type_id, work_type.id)
        self.assertEqual(policy.overtime_threshold_minutes, 450)
        self.assertEqual(policy.late_threshold_minutes, 5)
        self.assertTrue(policy.has_schedule)

    def test_inactive_or_missing_work_type_uses_default_policy(self) -> None:
        work_type = WorkType(name="Retired", overtime_threshold_minutes=300, is_active=False)
        self.db.add(work_type)
        self.db.commit()

        for work_type_id in (None, work_type.id, 9999):
            policy = get_work_type_policy(self.db, work_type_id)
            self.assertIsNone(policy.work_type_id)
            self.assertEqual(policy.overtime_threshold_minutes, 480)
            self.assertFalse(policy.has_schedule)


if __name__ == "__main__":
    unittest.main()
