from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone

from kintai.errors import InvalidClockRecord, InvalidInterval
from kintai.services.clock_sessions import (
    BreakInterval,
    ClockSession,
    dump_sessions,
    parse_sessions,
    validate_session,
    validate_sessions,
)

T0 = datetime(2026, 4, 1, 0, 0, tzinfo=timezone.utc)


def _at(minutes: int) -> datetime:
    return T0 + timedelta(minutes=minutes)


class ClockSessionParsingTests(unittest.TestCase):
    def test_parse_accepts_z_suffix_and_blank_open_end(self) -> None:
        sessions = parse_sessions(
            [
                {
                    "in_time": "2026-04-01T00:00:00Z",
                    "out_time": "",
                    "breaks": [{"break_start": "2026-04-01T03:00:00+00:00", "break_end": None}],
                }
            ]
        )

        self.assertEqual(len(sessions), 1)
        self.assertEqual(sessions[0].in_time, T0)
        self.assertIsNone(sessions[0].out_time)
        self.assertTrue(sessions[0].is_open)
        self.assertIsNotNone(sessions[0].active_break)

    def test_naive_timestamps_are_treated_as_utc(self) -> None:
        session = ClockSession(in_time=datetime(2026, 4, 1, 9, 0))
        self.assertEqual(session.in_time.tzinfo, timezone.utc)

    def test_missing_in_time_is_rejected(self) -> None:
        with self.assertRaises(InvalidClockRecord) as ctx:
            parse_sessions([{"out_time": "2026-04-01T09:00:00Z"}])
        self.assertEqual(ctx.exception.details["field"], "in_time")

    def test_breaks_must_be_a_list(self) -> None:
        with self.assertRaises(InvalidClockRecord):
            parse_sessions([{"in_time": "2026-04-01T09:00:00Z", "breaks": {"break_start": "x"}}])

    def test_unparsable_timestamp_is_rejected(self) -> None:
        with self.assertRaises(InvalidClockRecord):
            parse_sessions([{"in_time": "yesterday morning"}])

    def test_clock_records_must_be_a_list(self) -> None:
        with self.assertRaises(InvalidClockRecord):
            parse_sessions({"in_time": "2026-04-01T09:00:00Z"})

    def test_dump_uses_stored_shape(self) -> None:
        session = ClockSession(in_time=_at(0), out_time=_at(60), breaks=(BreakInterval(_at(10), _at(20)),))
        self.assertEqual(
            dump_sessions([session]),
            [
                {
                    "in_time": "2026-04-01T00:00:00+00:00",
                    "out_time": "2026-04-01T01:00:00+00:00",
                    "breaks": [
                        {
                            "break_start": "2026-04-01T00:10:00+00:00",
                            "break_end": "2026-04-01T00:20:00+00:00",
                        }
                    ],
                }
            ],
        )

    def test_transitions_build_new_values(self) -> None:
        session = ClockSession(in_time=_at(0))
        on_break = session.with_break(BreakInterval(break_start=_at(30)))
        back = on_break.with_active_break_closed(_at(45))
        closed = back.closed_at(_at(120))

        self.assertEqual(session.breaks, ())
        self.assertIsNotNone(on_break.active_break)
        self.assertIsNone(back.active_break)
        self.assertEqual(back.breaks[0].break_end, _at(45))
        self.assertIsNone(back.out_time)
        self.assertEqual(closed.out_time, _at(120))


class ClockSessionValidationTests(unittest.TestCase):
    def test_valid_session_passes(self) -> None:
        validate_session(
            ClockSession(
                in_time=_at(0),
                out_time=_at(540),
                breaks=(BreakInterval(_at(180), _at(210)),),
            )
        )

    def test_out_before_in_is_invalid(self) -> None:
        with self.assertRaises(InvalidInterval):
            validate_session(ClockSession(in_time=_at(60), out_time=_at(0)))

    def test_break_end_before_start_is_invalid(self) -> None:
        with self.assertRaises(InvalidInterval):
            validate_session(
                ClockSession(in_time=_at(0), out_time=_at(300), breaks=(BreakInterval(_at(100), _at(90)),))
            )

    def test_break_before_session_is_invalid(self) -> None:
        with self.assertRaises(InvalidInterval):
            validate_session(
                ClockSession(in_time=_at(60), out_time=_at(300), breaks=(BreakInterval(_at(30), _at(90)),))
            )

    def test_break_after_session_end_is_invalid(self) -> None:
        with self.assertRaises(InvalidInterval):
            validate_session(
                ClockSession(in_time=_at(0), out_time=_at(300), breaks=(BreakInterval(_at(290), _at(310)),))
            )

    def test_open_session_is_bounded_by_reference_time(self) -> None:
        session = ClockSession(in_time=_at(0), breaks=(BreakInterval(_at(10), _at(50)),))
        validate_session(session)
        with self.assertRaises(InvalidInterval):
            validate_session(session, reference_ts=_at(40))

    def test_more_than_one_open_break_is_invalid(self) -> None:
        with self.assertRaises(InvalidInterval) as ctx:
            validate_session(
                ClockSession(
                    in_time=_at(0),
                    breaks=(BreakInterval(_at(10)), BreakInterval(_at(20))),
                )
            )
        self.assertEqual(ctx.exception.details["open_breaks"], 2)

    def test_only_last_session_may_be_open(self) -> None:
        with self.assertRaises(InvalidInterval):
            validate_sessions([ClockSession(in_time=_at(0)), ClockSession(in_time=_at(60))])

    def test_sessions_may_not_overlap(self) -> None:
        with self.assertRaises(InvalidInterval):
            validate_sessions(
                [
                    ClockSession(in_time=_at(0), out_time=_at(120)),
                    ClockSession(in_time=_at(60), out_time=_at(180)),
                ]
            )


if __name__ == "__main__":
    unittest.main()
