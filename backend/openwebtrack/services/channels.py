"""Marketing channel classification.

WHAT: Maps (referrer, utm_source, utm_medium) to a channel label such as
      "Direct", "Email", "Paid", "Social", "Organic Search", "Referral" or a
      specific network/engine name ("Twitter", "Google").
WHY: Channel breakdowns are computed post-hoc over session rows; the rules
     are heuristic string matching that cannot be pushed into SQL.
REFERENCES:
  - services/aggregation.py: channelData, revenueByChannel, metrics "channels"
  - constants.py: SEARCH_ENGINES, SOCIAL_NETWORKS, SOCIAL_SOURCE_ALIASES

Decision order (first match wins):
  1. UTM present:
       email medium / source with "mail"   -> Email
       paid|cpc|ppc medium / "ads" source   -> Paid
       social medium                        -> network name or "Social"
       source names a social network        -> network name
       organic medium / search-engine source -> engine name or "Organic Search"
       referral|affiliate medium            -> Referral
  2. No referrer or an internal one         -> Direct
  3. Referrer host: social -> network, search -> engine, else Referral
"""

from typing import Optional
from urllib.parse import urlsplit

from ..constants import SEARCH_ENGINES, SOCIAL_NETWORKS, SOCIAL_SOURCE_ALIASES


def _label(name: str) -> str:
    return name[:1].upper() + name[1:]


def referrer_hostname(referrer: Optional[str]) -> Optional[str]:
    """Lowercase hostname of an absolute URL, or None when it has none."""
    if not referrer:
        return None
    try:
        hostname = urlsplit(referrer.strip()).hostname
    except ValueError:
        return None
    return hostname.lower() if hostname else None


def strip_www(hostname: str) -> str:
    return hostname[4:] if hostname.startswith("www.") else hostname


def is_internal_referrer(referrer: Optional[str]) -> bool:
    """True for localhost, loopback and *.local / *.localhost referrers."""
    hostname = referrer_hostname(referrer)
    if not hostname:
        return False
    return (
        hostname in ("localhost", "127.0.0.1", "::1")
        or hostname.endswith(".local")
        or hostname.endswith(".localhost")
    )


def _host_matches(hostname: str, entry: str) -> bool:
    # Dotted entries ("x.com", "t.co") must match a whole host suffix,
    # otherwise "netflix.com" would count as X. Also applied to utm_source.
    if "." in entry:
        return hostname == entry or hostname.endswith("." + entry)
    return entry in hostname


def _resolve_social_source(source: str) -> Optional[str]:
    if not source:
        return None
    alias = SOCIAL_SOURCE_ALIASES.get(source)
    if alias:
        return alias
    for network in SOCIAL_NETWORKS:
        if _host_matches(source, network):
            return network
    return None


def _resolve_search_source(source: str) -> Optional[str]:
    if not source:
        return None
    for engine in SEARCH_ENGINES:
        if _host_matches(source, engine):
            return engine
    return None


def classify_channel(
    referrer: Optional[str],
    utm_source: Optional[str],
    utm_medium: Optional[str],
) -> str:
    """Deterministic channel label; see the module docstring for the rules.

    Examples:
        classify_channel(None, "newsletter", "email")             -> "Email"
        classify_channel("https://twitter.com/x", None, None)    -> "Twitter"
        classify_channel(None, None, None)                        -> "Direct"
        classify_channel("https://google.com/search?q=x", None, None) -> "Google"
    """
    source = (utm_source or "").strip().lower()
    medium = (utm_medium or "").strip().lower()

    if source or medium:
        if medium == "email" or "email" in source or "mail" in source:
            return "Email"
        if medium in ("paid", "cpc", "ppc") or "ads" in source:
            return "Paid"

        social = _resolve_social_source(source)
        if medium == "social":
            return _label(social) if social else "Social"
        if social:
            return _label(social)

        search = _resolve_search_source(source)
        if medium == "organic" or search:
            return _label(search) if search else "Organic Search"
        if medium in ("referral", "affiliate"):
            return "Referral"

    if not referrer or is_internal_referrer(referrer):
        return "Direct"

    hostname = referrer_hostname(referrer)
    if not hostname:
        return "Direct"
    hostname = strip_www(hostname)

    for network in SOCIAL_NETWORKS:
        if _host_matches(hostname, network):
            return _label(network)
    for engine in SEARCH_ENGINES:
        if _host_matches(hostname, engine):
            return _label(engine)
    return "Referral"
