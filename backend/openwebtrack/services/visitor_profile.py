"""Deterministic visitor display names and avatars.

WHAT: "Fancy Eagle"-style names and DiceBear avatar URLs derived from the
      client-supplied visitor id.
WHY: Visitors are anonymous; a stable friendly label makes the live
     visitor feed readable. The hash must match the one the dashboard
     computes in the browser, so it reproduces JavaScript's 32-bit
     `(h << 5) - h` rolling hash over UTF-16 code units.
REFERENCES:
  - services/identity.py: Fills name/avatar when a visitor is created or
    is missing them
  - services/activity.py: Fallback name for visitors without one
"""

from typing import Iterator

from ..constants import DICEBEAR_AVATAR_URL

ADJECTIVES = ["Happy", "Lucky", "Sunny", "Clever", "Brave", "Calm", "Eager", "Fancy", "Gentle", "Jolly"]
ANIMALS = ["Panda", "Tiger", "Lion", "Eagle", "Dolphin", "Fox", "Wolf", "Bear", "Hawk", "Owl"]


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value >= 0x80000000 else value


def _utf16_code_units(text: str) -> Iterator[int]:
    encoded = text.encode("utf-16-le", errors="surrogatepass")
    for i in range(0, len(encoded), 2):
        yield encoded[i] | (encoded[i + 1] << 8)


def visitor_hash(visitor_id: str) -> int:
    """JavaScript `hash = code + ((hash << 5) - hash)` with its int32 shifts."""
    h = 0
    for code in _utf16_code_units(visitor_id):
        h = code + (_to_int32(_to_int32(h) << 5) - h)
    return h


def generate_visitor_name(visitor_id: str) -> str:
    """
    Examples:
        generate_visitor_name("a")  -> "Fancy Eagle"
        generate_visitor_name("ab") -> "Calm Bear"
    """
    h = visitor_hash(visitor_id)
    adjective = ADJECTIVES[abs(h) % len(ADJECTIVES)]
    animal = ANIMALS[abs(_to_int32(h) >> 5) % len(ANIMALS)]
    return f"{adjective} {animal}"


def generate_avatar_url(visitor_id: str) -> str:
    return DICEBEAR_AVATAR_URL.format(seed=visitor_id)
