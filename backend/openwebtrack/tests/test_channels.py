"""
Tests for traffic channel classification.

REFERENCES:
    - services/channels.py
    - constants.py: SEARCH_ENGINES, SOCIAL_NETWORKS, SOCIAL_SOURCE_ALIASES
"""

import pytest

from openwebtrack.services.channels import classify_channel, is_internal_referrer, referrer_hostname


@pytest.mark.parametrize(
    "referrer, source, medium, expected",
    [
        (None, None, None, "Direct"),
        ("", None, None, "Direct"),
        ("http://localhost:3000/", None, None, "Direct"),
        ("https://app.local/page", None, None, "Direct"),
        (None, "newsletter", "email", "Email"),
        (None, "mailchimp", None, "Email"),
        (None, "google", "cpc", "Paid"),
        (None, "facebook_ads", None, "Paid"),
        (None, "ig", None, "Instagram"),
        (None, "linkedin", "social", "Linkedin"),
        (None, "mystery", "social", "Social"),
        (None, "bing", None, "Bing"),
        (None, "someengine", "organic", "Organic Search"),
        (None, "partner", "affiliate", "Referral"),
        ("https://www.google.com/search?q=x", None, None, "Google"),
        ("https://duckduckgo.com/", None, None, "Duckduckgo"),
        ("https://twitter.com/someone", None, None, "Twitter"),
        ("https://t.co/abc", None, None, "T.co"),
        ("https://www.netflix.com/", None, None, "Referral"),
        ("https://news.ycombinator.com/", None, None, "Referral"),
    ],
)
def test_classify_channel(referrer, source, medium, expected):
    assert classify_channel(referrer, source, medium) == expected


def test_utm_takes_precedence_over_referrer():
    assert classify_channel("https://www.google.com/", "newsletter", "email") == "Email"


@pytest.mark.parametrize(
    "source, expected",
    [
        ("x", "X.com"),
        ("x.com", "X.com"),
        ("m.facebook.com", "Facebook"),
        ("co", "Direct"),
        ("t", "Direct"),
        ("goo", "Direct"),
        ("netflix.com", "Direct"),
    ],
)
def test_short_sources_need_an_alias_or_a_whole_name(source, expected):
    assert classify_channel(None, source, None) == expected


def test_unmatched_utm_falls_back_to_referrer():
    assert classify_channel("https://reddit.com/r/python", "launch", None) == "Reddit"
    assert classify_channel(None, "launch", None) == "Direct"


def test_referrer_helpers():
    assert referrer_hostname("https://WWW.Example.COM/path") == "www.example.com"
    assert referrer_hostname("not a url") is None
    assert is_internal_referrer("http://127.0.0.1:8000/")
    assert not is_internal_referrer("https://example.com/")
