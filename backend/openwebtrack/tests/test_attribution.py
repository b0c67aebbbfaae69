"""
Tests for pathname and UTM extraction from tracked URLs.

REFERENCES:
    - services/attribution.py
"""

from openwebtrack.services.attribution import UtmParams, extract_pathname, extract_utm_params


def test_extract_pathname():
    assert extract_pathname("https://example.com/pricing?plan=pro") == "/pricing"
    assert extract_pathname("https://example.com") == "/"
    assert extract_pathname("/docs?x=1") == "/docs"
    assert extract_pathname("?only=query") == "/"


def test_utm_from_page_url():
    utm = extract_utm_params(
        "https://example.com/?utm_source=newsletter&utm_medium=email&utm_campaign=spring",
        "https://mail.example.org/?utm_source=other",
    )
    assert utm == UtmParams(source="newsletter", medium="email", campaign="spring")


def test_utm_falls_back_to_referrer_when_source_missing():
    utm = extract_utm_params(
        "https://example.com/?utm_campaign=launch",
        "https://partner.io/?utm_source=partner&utm_medium=referral&utm_campaign=ignored",
    )
    assert utm == UtmParams(source="partner", medium="referral", campaign="launch")


def test_utm_none_without_parameters():
    assert extract_utm_params("https://example.com/", None) == UtmParams()
    assert extract_utm_params("not a url", "also not") == UtmParams()
