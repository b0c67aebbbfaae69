"""Tracking and reporting constants.

WHAT:
    Field length limits for the tracking payload, query row caps, and the
    reference lists used by the channel classifier.

WHY:
    The ingestion pipeline, the aggregation queries, and the tests all need
    to agree on these numbers. Runtime-tunable values (rate limits, cache
    sizes, session expiry) live in `deps.Settings` instead.
"""

# =============================================================================
# PAYLOAD LIMITS
# =============================================================================

MAX_STRING_LENGTHS = {
    "websiteId": 36,
    "domain": 255,
    "href": 2048,
    "referrer": 2048,
    "visitorId": 100,
    "sessionId": 100,
    "language": 35,
    "timezone": 100,
    "browser": 100,
    "browserVersion": 50,
    "os": 100,
    "osVersion": 50,
    "deviceType": 50,
    "title": 500,
    "eventName": 200,
    "currency": 10,
    "transactionId": 255,
    "filterValue": 200,
    "search": 100,
}

MAX_VIEWPORT_DIMENSION = 10000

DEFAULT_CURRENCY = "USD"


# =============================================================================
# SESSION / VISITOR BEHAVIOUR
# =============================================================================

# Visitor.last_seen is only rewritten when it is older than this
VISITOR_LAST_SEEN_REFRESH_SECONDS = 60

# "Online now" looks at sessions active within this window
ONLINE_WINDOW_MINUTES = 5


# =============================================================================
# QUERY CAPS
# =============================================================================

DEFAULT_QUERY_LIMITS = {
    "pageviews": 100000,
    "visitors": 100000,
    "sessions": 10000,
    "channels": 1000,
    "duration_sample": 1000,
    "recent_sessions": 50,
    "visitor_list": 100,
    "journey_sessions": 100,
    "export_rows": 10000,
}

TOP_LIST_LIMIT = 10


# =============================================================================
# CHANNEL CLASSIFICATION
# =============================================================================

SEARCH_ENGINES = [
    "google",
    "bing",
    "yahoo",
    "duckduckgo",
    "baidu",
    "yandex",
    "ecosia",
    "qwant",
    "startpage",
    "naver",
]

SOCIAL_NETWORKS = [
    "facebook",
    "instagram",
    "twitter",
    "x.com",
    "t.co",
    "linkedin",
    "pinterest",
    "reddit",
    "tiktok",
    "youtube",
    "snapchat",
    "whatsapp",
    "telegram",
    "discord",
    "github",
    "threads",
    "mastodon",
]

# Short utm_source spellings used by link shorteners and social schedulers
SOCIAL_SOURCE_ALIASES = {
    "ig": "instagram",
    "fb": "facebook",
    "tw": "twitter",
    "x": "x.com",
    "tt": "tiktok",
    "li": "linkedin",
    "pi": "pinterest",
    "rd": "reddit",
    "yt": "youtube",
    "sc": "snapchat",
    "wa": "whatsapp",
    "tg": "telegram",
    "dc": "discord",
    "gh": "github",
}

EXTERNAL_LINK_EVENT = "external_link"

DICEBEAR_AVATAR_URL = "https://api.dicebear.com/7.x/pixel-art/svg?seed={seed}"


# =============================================================================
# WEBSITE SETTINGS
# =============================================================================

# Per exclusion list (IPs, paths, countries)
MAX_EXCLUSION_RULES = 100
MAX_EXCLUSION_RULE_LENGTH = 500

SPIKE_THRESHOLD_RANGE = (10, 10000)
SPIKE_WINDOW_SECONDS_RANGE = (10, 3600)

# Accepted as a website domain only outside production
LOCAL_DOMAINS = ("localhost", "127.0.0.1", "::1")
