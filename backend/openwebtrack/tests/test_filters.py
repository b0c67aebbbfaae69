"""
Tests for dashboard filter parsing.

REFERENCES:
    - services/filters.py
"""

import json

from openwebtrack.services.filters import build_filter_conditions, escape_like, parse_filters


def test_invalid_json_yields_no_filters():
    assert parse_filters("{not json") == []
    assert parse_filters(json.dumps({"type": "country"})) == []
    assert parse_filters(None) == []


def test_drops_malformed_entries():
    raw = json.dumps(
        [
            {"type": "country", "value": "France"},
            {"type": "country"},
            {"type": 3, "value": "x"},
            {"type": "city", "value": ""},
            "string",
        ]
    )
    filters = parse_filters(raw)

    assert [(f.type, f.value) for f in filters] == [("country", "France")]


def test_values_are_truncated_then_escaped():
    raw = json.dumps([{"type": "page", "value": "a" * 250}, {"type": "page", "value": "50%_off"}])
    filters = parse_filters(raw)

    assert len(filters[0].value) == 200
    assert filters[1].value == "50\\%\\_off"


def test_escape_like_escapes_the_escape_character():
    assert escape_like("a\\b") == "a\\\\b"


def test_conditions_target_the_right_tables():
    filters = parse_filters(
        json.dumps(
            [
                {"type": "referrer", "value": "google"},
                {"type": "campaign", "value": "spring"},
                {"type": "device", "value": "mobile"},
                {"type": "goal", "value": "signup"},
                {"type": "entryPage", "value": "/blog"},
                {"type": "unknown", "value": "ignored"},
            ]
        )
    )
    conditions = build_filter_conditions(filters)

    assert len(conditions.pageview) == 2
    assert len(conditions.session) == 3
    assert len(conditions.event) == 1
