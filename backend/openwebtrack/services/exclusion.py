"""Per-site exclusion rules.

WHAT: Decides whether an incoming event is suppressed by the website's
      IP, path or country rules.
WHY: Owners exclude their own office, staging paths or whole countries.
     Excluded events are acknowledged with `{success: true, excluded: true}`
     and never persisted, so the calling page cannot discover the rule set.
REFERENCES:
  - services/ingestion.py: Calls `should_exclude` before any write
  - models.py:Website: `excluded_ips`, `excluded_paths`, `excluded_countries`
  - tests/test_exclusion.py

Rule syntax:
  - IP: exact ("203.0.113.7"), wildcard octets ("203.0.113.*"),
    IPv4 CIDR ("203.0.113.0/24"). IPv6 CIDR never matches.
  - Path: exact ("/admin") or `*` segments ("/blog/*/edit"), where `*`
    matches any run of non-slash characters.
  - Country: exact match against the resolved country name.
"""

import ipaddress
import logging
import re
from functools import lru_cache
from typing import Iterable, Optional, Pattern

from .geoip import GeoData

logger = logging.getLogger(__name__)


# =============================================================================
# IP RULES
# =============================================================================

def _matches_wildcard(ip: str, pattern: str) -> bool:
    ip_parts = ip.split(".")
    pattern_parts = pattern.split(".")
    if len(ip_parts) != 4 or len(pattern_parts) != 4:
        return False
    return all(p == "*" or p == part for p, part in zip(pattern_parts, ip_parts))


def _matches_cidr(ip: str, pattern: str) -> bool:
    try:
        network = ipaddress.ip_network(pattern, strict=False)
        address = ipaddress.ip_address(ip)
    except ValueError:
        return False
    # IPv4 only
    if network.version != 4 or address.version != 4:
        return False
    return address in network


def matches_ip_rule(ip: str, pattern: str) -> bool:
    pattern = pattern.strip()
    if not pattern:
        return False
    if "/" in pattern:
        return _matches_cidr(ip, pattern)
    if "*" in pattern:
        return _matches_wildcard(ip, pattern)
    return ip == pattern


def is_ip_excluded(ip: Optional[str], rules: Optional[Iterable[str]]) -> bool:
    if not ip or not rules:
        return False
    return any(matches_ip_rule(ip, rule) for rule in rules if isinstance(rule, str))


# =============================================================================
# PATH RULES
# =============================================================================

@lru_cache(maxsize=1024)
def compile_path_rule(pattern: str) -> Pattern[str]:
    """Anchored regex for a path rule; `*` becomes `[^/]*`."""
    escaped = "[^/]*".join(re.escape(part) for part in pattern.split("*"))
    return re.compile(f"^{escaped}$")


def is_path_excluded(pathname: Optional[str], rules: Optional[Iterable[str]]) -> bool:
    if not pathname or not rules:
        return False
    for rule in rules:
        if not isinstance(rule, str) or not rule:
            continue
        if rule == pathname or compile_path_rule(rule).match(pathname):
            return True
    return False


# =============================================================================
# COUNTRY RULES
# =============================================================================

def is_country_excluded(country: Optional[str], rules: Optional[Iterable[str]]) -> bool:
    if not country or not rules:
        return False
    return country in set(rules)


# =============================================================================
# COMBINED
# =============================================================================

def should_exclude(site, ip: Optional[str], pathname: Optional[str], geo: Optional[GeoData]) -> bool:
    """IP rules, then path rules, then country rules; first match wins.

    Args:
        site: Website row (anything with the three `excluded_*` lists)
        ip: Client IP, or None when only private addresses were seen
        pathname: Path of the tracked page
        geo: Resolved location; may be None when the site has no country rules
    """
    if is_ip_excluded(ip, site.excluded_ips):
        logger.info(f"[TRACK] Excluded by IP rule for {site.domain}")
        return True

    if is_path_excluded(pathname, site.excluded_paths):
        logger.info(f"[TRACK] Excluded by path rule for {site.domain}: {pathname}")
        return True

    if geo is not None and is_country_excluded(geo.country, site.excluded_countries):
        logger.info(f"[TRACK] Excluded by country rule for {site.domain}: {geo.country}")
        return True

    return False
