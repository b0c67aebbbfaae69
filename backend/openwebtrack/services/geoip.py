"""
GeoIP Resolution
================

Resolves a client IP to {country, region, city} through public HTTP
providers, behind an in-process LRU + TTL cache.

WHY THIS FILE EXISTS
--------------------
Every tracked event wants a location, but the providers are slow (hundreds
of ms), rate limited, and sometimes down. The cache absorbs repeat lookups
from the same visitor; provider fallback and negative caching keep a bad
provider from slowing down ingestion.

CONTRACT
--------
`GeoResolver.resolve(ip)` never raises. Unresolvable input (no IP, every
provider failed, garbage responses) yields GeoData with all fields None, and
that null result is cached for the same TTL as a real one.

CLIENT IP
---------
`get_client_ip()` inspects, in order:
    1. X-Forwarded-For (first public address in the chain)
    2. X-Real-IP
    3. CF-Connecting-IP
    4. X-Vercel-Forwarded-For (only when X-Vercel-Proxy-Signature is present)
    5. The socket address
and skips private, loopback and link-local addresses so internal proxies are
never geolocated.

RELATED FILES
-------------
- services/ingestion.py: Resolves geo for each event
- services/exclusion.py: Country rules consume the resolved country
- state.py: Owns the resolver, its cache and the shared httpx client
"""

import ipaddress
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Sequence

import httpx

from ..exceptions import UpstreamError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeoData:
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None

    @classmethod
    def empty(cls) -> "GeoData":
        return cls()

    @property
    def is_empty(self) -> bool:
        return not self.country


# =============================================================================
# CLIENT IP EXTRACTION
# =============================================================================

def is_private_ip(ip: str) -> bool:
    """True for loopback, RFC1918, link-local and IPv6 ULA/link-local addresses.

    Strings that do not parse as an IP address (other than "localhost") are
    reported as not private; `get_client_ip` discards them separately.
    """
    candidate = ip.strip()
    if candidate.lower() == "localhost":
        return True
    try:
        address = ipaddress.ip_address(candidate)
    except ValueError:
        return False

    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped

    return address.is_private or address.is_loopback or address.is_link_local


def _usable_ip(ip: Optional[str]) -> Optional[str]:
    if not ip:
        return None
    candidate = ip.strip()
    try:
        ipaddress.ip_address(candidate)
    except ValueError:
        return None
    if is_private_ip(candidate):
        return None
    return candidate


def _first_public(chain: Optional[str]) -> Optional[str]:
    if not chain:
        return None
    for part in chain.split(","):
        ip = _usable_ip(part)
        if ip:
            return ip
    return None


def get_client_ip(headers: Mapping[str, str], socket_ip: Optional[str] = None) -> Optional[str]:
    """Best-effort public client IP, or None when only private addresses are known.

    Args:
        headers: Request headers (case-insensitive mapping, e.g. starlette Headers)
        socket_ip: Peer address of the TCP connection
    """
    ip = _first_public(headers.get("x-forwarded-for"))
    if ip:
        return ip

    for header in ("x-real-ip", "cf-connecting-ip"):
        ip = _usable_ip(headers.get(header))
        if ip:
            return ip

    if headers.get("x-vercel-proxy-signature"):
        ip = _first_public(headers.get("x-vercel-forwarded-for"))
        if ip:
            return ip

    return _usable_ip(socket_ip)


# =============================================================================
# CACHE
# =============================================================================

@dataclass
class _CacheEntry:
    data: GeoData
    expires_at: float


class GeoCache:
    """
    LRU + TTL cache keyed by IP.

    WHAT:
        OrderedDict in access order; the oldest-accessed entry sits at the
        front and is evicted first once `max_size` is exceeded.

    WHY:
        O(1) get/set/evict-one instead of sorting the whole map by last
        access time on every cleanup.
    """

    def __init__(
        self,
        ttl_seconds: float,
        max_size: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._clock = clock
        self._entries: "OrderedDict[str, _CacheEntry]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, ip: str) -> bool:
        return ip in self._entries

    def get(self, ip: str) -> Optional[GeoData]:
        entry = self._entries.get(ip)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._entries[ip]
            return None
        self._entries.move_to_end(ip)
        return entry.data

    def set(self, ip: str, data: GeoData) -> None:
        self._entries[ip] = _CacheEntry(data=data, expires_at=self._clock() + self.ttl_seconds)
        self._entries.move_to_end(ip)
        self._trim()

    def _trim(self) -> int:
        removed = 0
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)
            removed += 1
        return removed

    def evict(self) -> int:
        """Drop expired entries, then least-recently-used ones over capacity."""
        now = self._clock()
        expired = [ip for ip, entry in self._entries.items() if entry.expires_at <= now]
        for ip in expired:
            del self._entries[ip]
        return len(expired) + self._trim()


# =============================================================================
# PROVIDERS
# =============================================================================

GeoProvider = Callable[[str], Awaitable[Optional[GeoData]]]


class IpWhoIsProvider:
    """https://ipwho.is/{ip}"""

    name = "ipwho.is"

    def __init__(self, client: httpx.AsyncClient, timeout: float = 3.0):
        self.client = client
        self.timeout = timeout

    async def __call__(self, ip: str) -> Optional[GeoData]:
        response = await self.client.get(f"https://ipwho.is/{ip}", timeout=self.timeout)
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise UpstreamError("Unexpected response shape", provider=self.name)
        if data.get("success") and data.get("country"):
            return GeoData(
                country=data["country"],
                region=data.get("region") or None,
                city=data.get("city") or None,
            )
        return None


class IpApiProvider:
    """http://ip-api.com/json/{ip} (free tier is HTTP only)."""

    name = "ip-api.com"

    def __init__(self, client: httpx.AsyncClient, timeout: float = 3.0):
        self.client = client
        self.timeout = timeout

    async def __call__(self, ip: str) -> Optional[GeoData]:
        response = await self.client.get(
            f"http://ip-api.com/json/{ip}",
            params={"fields": "status,country,regionName,city"},
            timeout=self.timeout,
        )
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise UpstreamError("Unexpected response shape", provider=self.name)
        if data.get("status") == "success" and data.get("country"):
            return GeoData(
                country=data["country"],
                region=data.get("regionName") or None,
                city=data.get("city") or None,
            )
        return None


def default_providers(client: httpx.AsyncClient, timeout: float = 3.0) -> List[GeoProvider]:
    """Providers in priority order."""
    return [IpWhoIsProvider(client, timeout), IpApiProvider(client, timeout)]


# =============================================================================
# RESOLVER
# =============================================================================

class GeoResolver:
    """
    Cache-backed resolver with provider fallback.

    Usage:
        resolver = GeoResolver(default_providers(http_client), GeoCache(3600, 10000))
        geo = await resolver.resolve("203.0.113.7")
    """

    def __init__(self, providers: Sequence[GeoProvider], cache: GeoCache):
        self.providers = list(providers)
        self.cache = cache
        self.provider_calls: Dict[str, int] = {}

    async def resolve(self, ip: Optional[str]) -> GeoData:
        if not ip:
            return GeoData.empty()

        cached = self.cache.get(ip)
        if cached is not None:
            return cached

        result = await self._fetch_from_providers(ip)
        # Null results are cached too, so a dead IP does not hit providers again
        self.cache.set(ip, result)
        return result

    async def _fetch_from_providers(self, ip: str) -> GeoData:
        for provider in self.providers:
            name = getattr(provider, "name", repr(provider))
            self.provider_calls[name] = self.provider_calls.get(name, 0) + 1
            try:
                result = await provider(ip)
            except (httpx.HTTPError, ValueError, UpstreamError) as e:
                logger.warning(f"[GEOIP] Provider {name} failed for {ip}: {e}")
                continue
            if result is not None and result.country:
                return result

        logger.info(f"[GEOIP] No provider resolved {ip}; caching empty result")
        return GeoData.empty()

    def evict(self) -> int:
        return self.cache.evict()
