"""JWT helpers for dashboard access.

WHAT:
    Issues and verifies the HS256 tokens that identify a dashboard user.

WHY:
    Login and account management live outside this service. The dashboard
    endpoints only need to check a signed token whose `sub` is the user id.
    `create_access_token` exists for scripts and tests that need a token.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from jose import jwt

ALGORITHM = "HS256"


def create_access_token(subject: str, secret: str, expires_minutes: int = 10080, algorithm: str = ALGORITHM) -> str:
    """Create a signed JWT for the given subject (the user id)."""
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=expires_minutes)
    to_encode: Dict[str, Any] = {"sub": subject, "iat": int(now.timestamp()), "exp": int(expire.timestamp())}
    return jwt.encode(to_encode, secret, algorithm=algorithm)


def decode_token(token: str, secret: str, algorithm: str = ALGORITHM) -> Dict[str, Any]:
    """Decode and validate a JWT, returning its payload.

    Raises jose.JWTError on failure.
    """
    return jwt.decode(token, secret, algorithms=[algorithm])
