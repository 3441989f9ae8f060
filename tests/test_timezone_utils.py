from datetime import UTC, datetime

import pytest

from lawcrm.services.errors import ValidationFailed
from lawcrm.services.timezone_utils import (
    format_ics_timestamp,
    format_utc_offset,
    parse_instant,
    to_utc_instant,
    to_wall_clock,
    zone_offset_minutes,
)

ZONE = "Asia/Jerusalem"


def test_to_utc_instant_uses_winter_offset() -> None:
    instant = to_utc_instant("2025-01-15", "10:00", ZONE)

    assert instant == datetime(2025, 1, 15, 8, 0, tzinfo=UTC)


def test_to_utc_instant_uses_summer_offset_for_that_date() -> None:
    instant = to_utc_instant("2025-07-01", "10:00", ZONE)

    assert instant == datetime(2025, 7, 1, 7, 0, tzinfo=UTC)


@pytest.mark.parametrize(
    ("raw_date", "raw_time"),
    [
        ("2025-01-15", "10:00"),
        ("2025-07-01", "23:45"),
        ("2024-02-29", "00:00"),
        ("2025-12-31", "23:59"),
    ],
)
def test_wall_clock_round_trip_without_transition(raw_date: str, raw_time: str) -> None:
    instant = to_utc_instant(raw_date, raw_time, ZONE)

    assert to_wall_clock(instant, ZONE) == (raw_date, raw_time)


def test_spring_forward_gap_resolves_with_standard_offset() -> None:
    first = to_utc_instant("2025-03-28", "02:30", ZONE)
    second = to_utc_instant("2025-03-28", "02:30", ZONE)

    assert first == second == datetime(2025, 3, 28, 0, 30, tzinfo=UTC)
    assert to_wall_clock(first, ZONE) == ("2025-03-28", "03:30")


def test_fall_back_overlap_resolves_with_standard_offset() -> None:
    instant = to_utc_instant("2025-10-26", "01:30", ZONE)

    assert instant == datetime(2025, 10, 25, 23, 30, tzinfo=UTC)
    assert to_wall_clock(instant, ZONE) == ("2025-10-26", "01:30")


def test_parse_instant_keeps_explicit_offsets() -> None:
    assert parse_instant("2025-01-15T14:30:00Z", ZONE) == datetime(2025, 1, 15, 14, 30, tzinfo=UTC)
    assert parse_instant("2025-01-15T14:30:00+05:00", ZONE) == datetime(2025, 1, 15, 9, 30, tzinfo=UTC)


def test_parse_instant_interprets_naive_values_in_zone() -> None:
    assert parse_instant("2025-01-15T14:30:00", ZONE) == datetime(2025, 1, 15, 12, 30, tzinfo=UTC)
    assert parse_instant("2025-01-15 14:30", ZONE) == datetime(2025, 1, 15, 12, 30, tzinfo=UTC)


def test_format_ics_timestamp_is_compact_utc() -> None:
    instant = to_utc_instant("2025-07-01", "10:00", ZONE)

    assert format_ics_timestamp(instant) == "20250701T070000Z"


def test_zone_offset_minutes_and_signed_strings() -> None:
    winter = datetime(2025, 1, 15, 8, 0, tzinfo=UTC)
    summer = datetime(2025, 7, 1, 7, 0, tzinfo=UTC)

    assert zone_offset_minutes(winter, ZONE) == 120
    assert zone_offset_minutes(summer, ZONE) == 180
    assert format_utc_offset(180) == "+0300"
    assert format_utc_offset(-270, separator=":") == "-04:30"
    assert zone_offset_minutes(winter, "America/New_York") == -300


@pytest.mark.parametrize(
    ("raw_date", "raw_time", "zone"),
    [
        ("2025-13-01", "10:00", ZONE),
        ("2025-01-15", "25:00", ZONE),
        ("2025-01-15", "ten", ZONE),
        ("2025-01-15", "10:00", "Mars/Olympus"),
    ],
)
def test_invalid_values_raise_validation_failed(raw_date: str, raw_time: str, zone: str) -> None:
    with pytest.raises(ValidationFailed):
        to_utc_instant(raw_date, raw_time, zone)
