"""
Tests for date range parsing and timezone-aware time bucketing.

WHAT:
    Local-midnight bounds, the 7-day defaults, clamping, and dense bucket
    keys for every granularity (including a DST transition).

REFERENCES:
    - services/date_range.py
    - services/timeseries.py
"""

from datetime import datetime

import pytest

from openwebtrack.exceptions import ValidationError
from openwebtrack.services.date_range import parse_date_range
from openwebtrack.services.timeseries import (
    bucket_key,
    build_time_series,
    expected_bucket_keys,
    get_zone,
    normalize_granularity,
)

NOW = datetime(2024, 3, 10, 12, 0)


# =============================================================================
# DATE RANGE
# =============================================================================

def test_explicit_dates_cover_whole_local_days():
    rng = parse_date_range("2024-03-01", "2024-03-07", now=NOW)

    assert rng.start == datetime(2024, 3, 1, 0, 0)
    assert rng.end.date() == datetime(2024, 3, 7).date()
    assert (rng.end.hour, rng.end.minute, rng.end.second) == (23, 59, 59)


def test_dates_are_site_local_midnights():
    rng = parse_date_range("2024-03-01", "2024-03-01", timezone="America/New_York", now=NOW)

    # EST is UTC-5 on March 1st
    assert rng.start == datetime(2024, 3, 1, 5, 0)


def test_iso_datetimes_are_taken_literally():
    rng = parse_date_range("2024-03-01T10:30:00Z", "2024-03-02T08:00:00Z", timezone="Europe/Berlin", now=NOW)

    assert rng.start == datetime(2024, 3, 1, 10, 30)
    assert rng.end == datetime(2024, 3, 2, 8, 0)


def test_default_is_last_seven_days_until_now():
    rng = parse_date_range(None, None, now=NOW)

    assert rng.start == datetime(2024, 3, 4, 0, 0)
    assert rng.end == NOW


def test_single_start_bound_gives_seven_day_window():
    rng = parse_date_range("2024-02-01", None, now=NOW)

    assert rng.start == datetime(2024, 2, 1, 0, 0)
    assert rng.end.date() == datetime(2024, 2, 7).date()


def test_single_end_bound_gives_seven_day_window():
    rng = parse_date_range(None, "2024-02-07", now=NOW)

    assert rng.start == datetime(2024, 2, 1, 0, 0)


def test_long_ranges_are_clamped_by_moving_start():
    rng = parse_date_range("2020-01-01", "2024-03-01", max_days=30, now=NOW)

    assert (rng.end - rng.start).days == 30
    assert rng.end.date() == datetime(2024, 3, 1).date()


def test_future_end_is_clamped_to_now():
    rng = parse_date_range("2024-03-09", "2025-01-01", now=NOW)

    assert rng.end == NOW


def test_invalid_dates_and_inverted_ranges():
    with pytest.raises(ValidationError):
        parse_date_range("yesterday", None, now=NOW)
    with pytest.raises(ValidationError):
        parse_date_range("2024-03-08", "2024-03-01", now=NOW)


def test_date_range_response_is_iso_utc():
    rng = parse_date_range("2024-03-01", "2024-03-07", now=NOW)

    assert rng.to_response()["start"] == "2024-03-01T00:00:00.000Z"


# =============================================================================
# BUCKETS
# =============================================================================

def test_granularity_normalization():
    assert normalize_granularity(None) == "daily"
    assert normalize_granularity("HOURLY") == "hourly"
    assert normalize_granularity("yearly") == "daily"


def test_unknown_timezone_falls_back_to_utc():
    assert bucket_key(datetime(2024, 3, 1, 23, 30), "daily", get_zone("Mars/Olympus")) == "2024-03-01"


def test_bucket_keys_use_local_wall_time():
    zone = get_zone("America/New_York")
    ts = datetime(2024, 3, 2, 3, 0)  # 22:00 on March 1st in New York

    assert bucket_key(ts, "daily", zone) == "2024-03-01"
    assert bucket_key(ts, "hourly", zone) == "2024-03-01T22:00"
    assert bucket_key(ts, "weekly", zone) == "2024-02-26"
    assert bucket_key(ts, "monthly", zone) == "2024-03-01"


def test_expected_keys_for_each_granularity():
    utc = get_zone("UTC")
    start, end = datetime(2024, 1, 30), datetime(2024, 3, 2, 23, 59)

    assert expected_bucket_keys(start, end, "monthly", utc) == ["2024-01-01", "2024-02-01", "2024-03-01"]
    assert expected_bucket_keys(start, end, "weekly", utc)[0] == "2024-01-29"
    assert len(expected_bucket_keys(start, end, "daily", utc)) == 33
    assert expected_bucket_keys(end, start, "daily", utc) == []


def test_hourly_keys_across_dst_are_unique():
    zone = get_zone("America/New_York")
    # Clocks fall back at 06:00 UTC on 2024-11-03; 01:00 local happens twice
    keys = expected_bucket_keys(datetime(2024, 11, 3, 4, 0), datetime(2024, 11, 3, 8, 0), "hourly", zone)

    assert keys == ["2024-11-03T00:00", "2024-11-03T01:00", "2024-11-03T02:00", "2024-11-03T03:00"]


def test_build_time_series_is_dense():
    utc = get_zone("UTC")
    series = build_time_series(
        datetime(2024, 3, 1),
        datetime(2024, 3, 3, 23, 59),
        "daily",
        utc,
        pageviews={"2024-03-02": 5},
        visitors={"2024-03-02": 2},
        revenue={"2024-03-03": 1200},
    )

    assert series == [
        {"date": "2024-03-01", "visitors": 0, "pageviews": 0, "revenue": 0},
        {"date": "2024-03-02", "visitors": 2, "pageviews": 5, "revenue": 0},
        {"date": "2024-03-03", "visitors": 0, "pageviews": 0, "revenue": 1200},
    ]
