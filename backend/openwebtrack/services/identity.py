"""
Visitor and Session Identity Resolution
=======================================

Decides, for one tracked event, which Visitor and Session rows it belongs to
and creates, extends or rotates them.

WHY THIS FILE EXISTS
--------------------
Visitor and session ids are generated by the browser snippet. The server
must turn them into rows while:
- two first-events for a brand new session id race each other,
- a session id outlives its session (the tab stays open past expiry),
- a client sends a session id that already belongs to another website.

SESSION STATE MACHINE
---------------------
    no-session ──insert──────────────────────────────▶ active   (CREATED)
        │ insert says ALREADY_EXISTS (concurrent twin)
        └─────────────re-fetch, extend───────────────▶ active   (JOINED_CONCURRENT)
    active ──────extend expiry, backfill empty fields──▶ active   (EXTENDED)
    expired / other site ──insert server-generated id──▶ active   (ROTATED)

After ROTATED the caller must write every pageview/event with the returned
`session_id`, never the id the client sent.

VISITOR RULES
-------------
- Existing visitor: fill name/avatar if missing; refresh last_seen only when
  it is more than 60 s old (bounds writes for chatty pages).
- New visitor: insert-if-absent with generated name/avatar.

CONCURRENCY
-----------
No locks. Each write commits on its own and correctness rests on primary
keys plus `insert_if_absent`. Backfill races are last-write-wins.

RELATED FILES
-------------
- database.py: insert_if_absent / InsertOutcome
- services/ingestion.py: Calls `IdentityResolver.resolve()` per event
- services/visitor_profile.py: Name/avatar generation
- tests/test_identity.py
"""

import enum
import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..constants import VISITOR_LAST_SEEN_REFRESH_SECONDS
from ..database import InsertOutcome, insert_if_absent
from ..exceptions import PersistenceError
from ..models import AnalyticsSession, Visitor
from .visitor_profile import generate_avatar_url, generate_visitor_name

logger = logging.getLogger(__name__)


class SessionTransition(str, enum.Enum):
    created = "created"
    joined_concurrent = "joined_concurrent"
    extended = "extended"
    rotated = "rotated"


# Session columns filled on an active session only while they are empty
BACKFILL_FIELDS = ("country", "region", "city", "utm_source", "utm_medium", "utm_campaign", "referrer")


@dataclass(frozen=True)
class SessionSnapshot:
    """Attribution, device and geo values observed on the current event."""

    referrer: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    screen_width: Optional[int] = None
    screen_height: Optional[int] = None
    language: Optional[str] = None
    timezone: Optional[str] = None
    browser: Optional[str] = None
    browser_version: Optional[str] = None
    os: Optional[str] = None
    os_version: Optional[str] = None
    device_type: Optional[str] = None
    is_pwa: bool = False
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None


@dataclass(frozen=True)
class IdentityResult:
    """
    Attributes:
        session_id: Authoritative session id for every downstream write
        transition: What happened to the session row
        visitor_created: True when this event inserted the Visitor row
    """

    session_id: str
    transition: SessionTransition
    visitor_created: bool = False

    @property
    def started_session(self) -> bool:
        return self.transition in (SessionTransition.created, SessionTransition.rotated)


class IdentityResolver:
    """
    Usage:
        resolver = IdentityResolver(session_expiry_minutes=30)
        result = await resolver.resolve(db, site.id, "v-123", "s-456", snapshot, utcnow())
        Pageview(session_id=result.session_id, ...)
    """

    def __init__(self, session_expiry_minutes: int = 30):
        self.session_expiry = timedelta(minutes=session_expiry_minutes)

    async def resolve(
        self,
        db: AsyncSession,
        website_id: uuid.UUID,
        visitor_id: str,
        session_id: str,
        snapshot: SessionSnapshot,
        now: datetime,
    ) -> IdentityResult:
        visitor_created = await self.resolve_visitor(db, website_id, visitor_id, now)
        session_id, transition = await self.resolve_session(
            db, website_id, visitor_id, session_id, snapshot, now
        )
        return IdentityResult(session_id=session_id, transition=transition, visitor_created=visitor_created)

    # =========================================================================
    # VISITOR
    # =========================================================================

    async def resolve_visitor(
        self,
        db: AsyncSession,
        website_id: uuid.UUID,
        visitor_id: str,
        now: datetime,
    ) -> bool:
        """Create or patch the visitor. Returns True when a row was inserted."""
        existing = (
            await db.execute(
                select(Visitor)
                .where(Visitor.website_id == website_id, Visitor.id == visitor_id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()

        if existing is not None:
            updates = {}
            if not existing.name:
                updates["name"] = generate_visitor_name(visitor_id)
            if not existing.avatar:
                updates["avatar"] = generate_avatar_url(visitor_id)
            if (now - existing.last_seen).total_seconds() > VISITOR_LAST_SEEN_REFRESH_SECONDS:
                updates["last_seen"] = now

            if updates:
                await db.execute(
                    update(Visitor)
                    .where(Visitor.website_id == website_id, Visitor.id == visitor_id)
                    .values(**updates)
                )
                await db.commit()
            return False

        outcome = await insert_if_absent(
            db,
            Visitor,
            {
                "website_id": website_id,
                "id": visitor_id,
                "name": generate_visitor_name(visitor_id),
                "avatar": generate_avatar_url(visitor_id),
                "is_customer": False,
                "first_seen": now,
                "last_seen": now,
            },
            conflict_columns=["website_id", "id"],
        )
        if outcome is InsertOutcome.inserted:
            logger.info(f"[IDENTITY] New visitor {visitor_id} on {website_id}")
            return True
        return False

    # =========================================================================
    # SESSION
    # =========================================================================

    async def _get_session(self, db: AsyncSession, session_id: str) -> Optional[AnalyticsSession]:
        return (
            await db.execute(
                select(AnalyticsSession)
                .where(AnalyticsSession.id == session_id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()

    def _new_session_values(
        self,
        session_id: str,
        website_id: uuid.UUID,
        visitor_id: str,
        snapshot: SessionSnapshot,
        now: datetime,
    ) -> dict:
        values = asdict(snapshot)
        values.update(
            id=session_id,
            visitor_id=visitor_id,
            website_id=website_id,
            started_at=now,
            expires_at=now + self.session_expiry,
            last_activity_at=now,
            is_pwa=bool(snapshot.is_pwa),
        )
        return values

    async def resolve_session(
        self,
        db: AsyncSession,
        website_id: uuid.UUID,
        visitor_id: str,
        session_id: str,
        snapshot: SessionSnapshot,
        now: datetime,
    ):
        """Returns (authoritative session id, SessionTransition)."""
        existing = await self._get_session(db, session_id)

        if existing is None:
            outcome = await insert_if_absent(
                db,
                AnalyticsSession,
                self._new_session_values(session_id, website_id, visitor_id, snapshot, now),
                conflict_columns=["id"],
            )
            if outcome is InsertOutcome.inserted:
                return session_id, SessionTransition.created

            # A concurrent request created the same id first; join it
            logger.info(f"[IDENTITY] Session {session_id} created concurrently, joining")
            existing = await self._get_session(db, session_id)
            if existing is None:
                raise PersistenceError(f"Session {session_id} vanished after insert conflict")
            if self._is_recycled(existing, website_id, now):
                return await self._rotate(db, existing, website_id, visitor_id, snapshot, now)
            await self._extend(db, existing, snapshot, now)
            return session_id, SessionTransition.joined_concurrent

        if self._is_recycled(existing, website_id, now):
            return await self._rotate(db, existing, website_id, visitor_id, snapshot, now)

        await self._extend(db, existing, snapshot, now)
        return session_id, SessionTransition.extended

    @staticmethod
    def _is_recycled(existing: AnalyticsSession, website_id: uuid.UUID, now: datetime) -> bool:
        return existing.expires_at < now or existing.website_id != website_id

    async def _extend(
        self,
        db: AsyncSession,
        existing: AnalyticsSession,
        snapshot: SessionSnapshot,
        now: datetime,
    ) -> None:
        updates = {"expires_at": now + self.session_expiry, "last_activity_at": now}
        for field_name in BACKFILL_FIELDS:
            observed = getattr(snapshot, field_name)
            if observed and not getattr(existing, field_name):
                updates[field_name] = observed

        await db.execute(
            update(AnalyticsSession).where(AnalyticsSession.id == existing.id).values(**updates)
        )
        await db.commit()

    async def _rotate(
        self,
        db: AsyncSession,
        existing: AnalyticsSession,
        website_id: uuid.UUID,
        visitor_id: str,
        snapshot: SessionSnapshot,
        now: datetime,
    ):
        new_id = str(uuid.uuid4())
        reason = "expired" if existing.website_id == website_id else "foreign website"
        logger.info(f"[IDENTITY] Rotating session {existing.id} ({reason}) -> {new_id}")

        await db.execute(
            insert(AnalyticsSession).values(
                **self._new_session_values(new_id, website_id, visitor_id, snapshot, now)
            )
        )
        await db.commit()
        return new_id, SessionTransition.rotated
