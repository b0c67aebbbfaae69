"""Team membership for shared dashboards.

WHAT: The owner can give other registered users read access to a website.
WHY: Members pass `get_accessible_website`; only the owner may change the
     team, edit settings or wipe data.
REFERENCES:
  - routers/team.py: HTTP endpoints
  - deps.py: get_accessible_website / get_owned_website
"""

import logging
import uuid
from typing import List

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..exceptions import ConflictError, NotFoundError, ValidationError
from ..models import TeamMember, User, Website
from ..schemas import TeamMemberOut

logger = logging.getLogger(__name__)


def _member_out(member: TeamMember, user: User) -> TeamMemberOut:
    return TeamMemberOut(
        id=member.id,
        user_id=user.id,
        email=user.email,
        name=user.name,
        created_at=member.created_at,
    )


async def list_team_members(db: AsyncSession, site: Website) -> List[TeamMemberOut]:
    rows = (
        await db.execute(
            select(TeamMember, User)
            .join(User, TeamMember.user_id == User.id)
            .where(TeamMember.website_id == site.id)
            .order_by(TeamMember.created_at)
        )
    ).all()
    return [_member_out(member, user) for member, user in rows]


async def add_team_member(db: AsyncSession, site: Website, email: str) -> TeamMemberOut:
    """Add an existing account to the site's team.

    Raises:
        NotFoundError: No account with that email
        ValidationError: The owner invited themselves
        ConflictError: Already a member
    """
    user = (
        await db.execute(select(User).where(func.lower(User.email) == email.lower()).limit(1))
    ).scalar_one_or_none()
    if user is None:
        raise NotFoundError("User not found. They need to create an account first.")

    if user.id == site.user_id:
        raise ValidationError("Cannot invite yourself")

    existing = (
        await db.execute(
            select(TeamMember.id)
            .where(TeamMember.website_id == site.id, TeamMember.user_id == user.id)
            .limit(1)
        )
    ).scalar_one_or_none()
    if existing is not None:
        raise ConflictError("User is already a team member")

    member = TeamMember(website_id=site.id, user_id=user.id)
    db.add(member)
    await db.commit()
    await db.refresh(member)

    logger.info(f"[TEAM] Added {user.email} to {site.domain}")
    return _member_out(member, user)


async def remove_team_member(db: AsyncSession, site: Website, member_id: str) -> None:
    try:
        member_uuid = uuid.UUID(member_id)
    except ValueError:
        raise ValidationError("Invalid member ID")

    member = (
        await db.execute(
            select(TeamMember).where(TeamMember.id == member_uuid, TeamMember.website_id == site.id)
        )
    ).scalar_one_or_none()
    if member is None:
        raise NotFoundError("Team member not found")

    await db.delete(member)
    await db.commit()
    logger.info(f"[TEAM] Removed member {member_uuid} from {site.domain}")
