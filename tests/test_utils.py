"""Tests for timezone helpers, the event emitter and calendar export."""

from datetime import datetime, timezone
from typing import List

import pytest
from icalendar import Calendar

from conftest import ALICE, BOB, CAROL, match_row
from pingpong_matcher.services.calendar_export import build_calendar, write_calendar
from pingpong_matcher.storage.models import Match, Profile
from pingpong_matcher.utils.events import EventEmitter
from pingpong_matcher.utils.timezone import format_local, parse_local, parse_timestamp, to_utc


class TestTimezone:
    @pytest.mark.parametrize(
        "text",
        [
            "2025-03-01T10:00:00Z",
            "2025-03-01T10:00:00+00:00",
            "2025-03-01T19:00:00+09:00",
        ],
    )
    def test_parse_timestamp_variants(self, text: str) -> None:
        assert parse_timestamp(text) == datetime(2025, 3, 1, 10, tzinfo=timezone.utc)

    def test_parse_timestamp_short_fraction(self) -> None:
        parsed = parse_timestamp("2025-03-01T10:00:00.12+00:00")
        assert parsed.microsecond == 120000

    def test_parse_timestamp_empty(self) -> None:
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None

    def test_parse_local_uses_zone_for_naive_input(self) -> None:
        assert parse_local("2025-03-01T19:00", "Asia/Tokyo") == datetime(2025, 3, 1, 10, tzinfo=timezone.utc)

    def test_parse_local_rejects_garbage(self) -> None:
        with pytest.raises(ValueError):
            parse_local("tomorrow", "Asia/Tokyo")

    def test_format_local(self) -> None:
        dt = datetime(2025, 3, 1, 10, tzinfo=timezone.utc)
        assert format_local(dt, "Asia/Tokyo") == "2025/03/01 19:00"
        assert format_local(None) == "-"

    def test_to_utc_naive_is_utc(self) -> None:
        assert to_utc(datetime(2025, 1, 1, 5)) == datetime(2025, 1, 1, 5, tzinfo=timezone.utc)


class TestEventEmitter:
    def test_emit_and_unsubscribe(self) -> None:
        emitter = EventEmitter()
        received = []
        off = emitter.on("signed_in", received.append)

        assert emitter.emit("signed_in", "u1") == 1
        off()
        off()
        assert emitter.emit("signed_in", "u2") == 0
        assert received == ["u1"]

    def test_failing_handler_does_not_stop_others(self) -> None:
        emitter = EventEmitter()
        received = []

        def broken(_):
            raise RuntimeError("nope")

        emitter.on("x", broken)
        emitter.on("x", received.append)
        emitter.emit("x", 1)
        assert received == [1]


class TestCalendarExport:
    def matches(self) -> List[Match]:
        return [
            Match.from_row(match_row(1, "2025-03-01T10:00:00Z", user_a=ALICE, user_b=BOB, status="confirmed",
                                     end_at="2025-03-01T12:00:00Z", venue_text="City Gym")),
            Match.from_row(match_row(2, "2025-03-02T10:00:00Z", user_a=ALICE, user_b=BOB, status="pending")),
            Match.from_row(match_row(3, "2025-03-03T10:00:00Z", user_a=BOB, user_b=CAROL, status="confirmed")),
            Match.from_row(match_row(4, "2025-03-04T10:00:00Z", user_a=CAROL, user_b=ALICE, status="confirmed")),
        ]

    def test_only_own_confirmed_matches(self) -> None:
        cal = build_calendar(self.matches(), ALICE, {BOB: Profile(user_id=BOB, nickname="Bob")})
        events = cal.walk("VEVENT")

        assert [str(e["uid"]) for e in events] == [
            "match-1@pingpong-matcher",
            "match-4@pingpong-matcher",
        ]
        assert str(events[0]["summary"]) == "Table tennis with Bob"
        assert str(events[0]["location"]) == "City Gym"
        # Missing end falls back to one hour
        assert events[1].decoded("dtend") - events[1].decoded("dtstart") == (
            datetime(2025, 3, 4, 11) - datetime(2025, 3, 4, 10)
        )

    def test_write_calendar(self, tmp_path) -> None:
        path = write_calendar(build_calendar(self.matches(), ALICE), str(tmp_path / "out" / "m.ics"))
        parsed = Calendar.from_ical(path.read_bytes())
        assert len(parsed.walk("VEVENT")) == 2
