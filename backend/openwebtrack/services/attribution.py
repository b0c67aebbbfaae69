"""URL helpers for page attribution.

WHAT: Pathname and UTM extraction from the tracked page URL.
WHY: Sessions keep first-touch UTM values and pageviews are grouped by
     pathname; both come from the raw `href` the snippet sends.
REFERENCES:
  - services/ingestion.py: Calls both helpers once per event
  - services/identity.py: Stores the UTM triple on new sessions
"""

from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qs, urlsplit

UTM_KEYS = ("utm_source", "utm_medium", "utm_campaign")


@dataclass(frozen=True)
class UtmParams:
    source: Optional[str] = None
    medium: Optional[str] = None
    campaign: Optional[str] = None


def _is_absolute(url: str) -> bool:
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return bool(parts.scheme and parts.netloc)


def extract_pathname(url: str) -> str:
    """Path component of an absolute URL.

    Non-URLs fall back to everything before "?" (max 255 chars), or "/".
    """
    if _is_absolute(url):
        return urlsplit(url).path or "/"
    return url.split("?")[0][:255] or "/"


def _query_values(url: Optional[str]) -> Optional[dict]:
    if not url or not _is_absolute(url):
        return None
    query = parse_qs(urlsplit(url).query)
    return {key: (query.get(key) or [None])[0] or None for key in UTM_KEYS}


def extract_utm_params(url: str, referrer: Optional[str]) -> UtmParams:
    """UTM values from the page URL, with the referrer URL as fallback.

    The referrer is consulted only when the page URL has no utm_source;
    then each missing field is taken from the referrer.
    """
    page = _query_values(url)
    ref = _query_values(referrer)

    if page is None:
        if ref is None:
            return UtmParams()
        return UtmParams(ref["utm_source"], ref["utm_medium"], ref["utm_campaign"])

    source, medium, campaign = page["utm_source"], page["utm_medium"], page["utm_campaign"]
    if not source and ref is not None:
        source = ref["utm_source"]
        medium = medium or ref["utm_medium"]
        campaign = campaign or ref["utm_campaign"]

    return UtmParams(source=source, medium=medium, campaign=campaign)
