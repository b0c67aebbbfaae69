"""
Tracker Exceptions
==================

Error taxonomy shared by the ingestion pipeline and the dashboard endpoints.

WHY THIS FILE EXISTS
--------------------
The tracking endpoint is called by a fire-and-forget browser snippet, the
dashboard endpoints by an authenticated UI. Both need the same mapping from
"what went wrong" to an HTTP status and a JSON body, and the pipeline needs
to raise these without knowing about FastAPI.

Errors raised before the first write (validation, rate limit, domain
mismatch) leave no trace in the database. Errors raised after the visitor or
session write keep that state; retries by the same client converge on it.

RELATED FILES
-------------
- services/ingestion.py: Raises most of these
- main.py: Registers the exception handler that renders them
- database.py: InsertOutcome replaces a conflict exception for the session race
"""

from typing import Any, Dict, List, Optional


class TrackerError(Exception):
    """
    Base exception for all tracker errors.

    WHAT:
        Carries a human-readable message and the HTTP status it maps to.

    WHY:
        Lets routers and the global handler catch everything with one clause
        while subclasses keep their own status codes.
    """

    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_response(self) -> Dict[str, Any]:
        """Body rendered to the caller."""
        return {"error": self.message}


class ValidationError(TrackerError):
    """Malformed JSON or schema violation.

    `errors` lists every field problem as "path: message"; `message` is the
    first of them so simple clients can show one line.
    """

    status_code = 400

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors if errors is not None else [message]

    def to_response(self) -> Dict[str, Any]:
        return {"error": self.message, "errors": self.errors}


class AuthenticationError(TrackerError):
    """Missing or invalid dashboard credentials."""

    status_code = 401


class AuthorizationError(TrackerError):
    """Domain mismatch on ingestion, or a caller without rights on a site."""

    status_code = 403


class NotFoundError(TrackerError):
    """Unknown website, visitor or session."""

    status_code = 404


class RateLimitError(TrackerError):
    """Too many tracking calls for one (site, client) key."""

    status_code = 429

    def __init__(self, message: str = "Rate limit exceeded"):
        super().__init__(message)


class UpstreamError(TrackerError):
    """
    A third-party provider (GeoIP) failed or answered garbage.

    NOTE:
        Never reaches the caller. The geo resolver catches it and degrades to
        an all-null result.
    """

    status_code = 502

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class PersistenceError(TrackerError):
    """Unexpected datastore failure. No cleanup of earlier writes is attempted."""

    status_code = 500


class ConflictError(TrackerError):
    """A dashboard write collides with an existing row (domain already
    registered, user already on the team)."""

    status_code = 409
