from datetime import datetime, timedelta, timezone
from typing import NamedTuple

import pytest

from breaktime.core.errors import InvalidRequest
from breaktime.scheduling.timewindow import (
    format_time_of_day,
    format_time_range,
    gap,
    gap_minutes,
    minutes_between,
    overlaps,
    parse_time_of_day,
    to_millis,
)
from support import NY, at


class Span(NamedTuple):
    start: datetime
    end: datetime


@pytest.mark.parametrize(
    "text, expected",
    [
        ("2:30pm", (14, 30)),
        ("2:30 PM", (14, 30)),
        ("14:30", (14, 30)),
        ("2pm", (14, 0)),
        ("14", (14, 0)),
        ("12am", (0, 0)),
        ("12pm", (12, 0)),
        ("9:05 a.m.", (9, 5)),
    ],
)
def test_parse_time_of_day_formats(text, expected):
    parsed = parse_time_of_day(text, at(8))
    assert (parsed.hour, parsed.minute) == expected
    assert parsed.date() == at(8).date()
    assert parsed.tzinfo is NY


def test_parse_now_truncates_to_minute():
    reference = at(10, 17).replace(second=42, microsecond=5)
    assert parse_time_of_day("now", reference) == at(10, 17)


@pytest.mark.parametrize("text", ["", "   ", "25:00", "13pm", "0am", "10:75", "noonish", "1:5pm"])
def test_parse_rejects_bad_input(text):
    with pytest.raises(InvalidRequest):
        parse_time_of_day(text, at(8))


def test_format_round_trips_to_same_wall_clock_minute():
    start = at(0)
    for minutes in range(0, 24 * 60, 7):
        value = start + timedelta(minutes=minutes)
        parsed = parse_time_of_day(format_time_of_day(value), value)
        assert (parsed.hour, parsed.minute) == (value.hour, value.minute)


def test_format_time_of_day_keeps_minutes():
    assert format_time_of_day(at(9)) == "9:00am"
    assert format_time_of_day(at(14, 30)) == "2:30pm"
    assert format_time_of_day(at(0, 5)) == "12:05am"
    assert format_time_range(at(9, 30), at(9, 45)) == "9:30am–9:45am"


def test_overlaps_is_half_open():
    a = Span(at(9), at(10))
    assert overlaps(a, Span(at(9, 30), at(10, 30)))
    assert not overlaps(a, Span(at(10), at(11)))
    assert not overlaps(Span(at(10), at(11)), a)


def test_zero_length_interval_never_overlaps():
    a = Span(at(9), at(10))
    assert not overlaps(a, Span(at(9, 30), at(9, 30)))


def test_gap_helpers():
    a = Span(at(9), at(9, 30))
    b = Span(at(10), at(11))
    assert gap(a, b) == timedelta(minutes=30)
    assert gap_minutes(a, b) == 30
    assert gap_minutes(b, a) < 0
    assert minutes_between(at(9), at(9, 45)) == 45


def test_millis_compare_across_timezones():
    utc = at(9).astimezone(timezone.utc)
    assert to_millis(utc) == to_millis(at(9))


def test_naive_datetimes_are_rejected():
    with pytest.raises(InvalidRequest):
        to_millis(datetime(2025, 3, 4, 9, 0))
