"""Team management endpoints (owner only)."""

from typing import List

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from .. import schemas
from ..database import get_async_db
from ..deps import get_owned_website
from ..models import Website
from ..services.team import add_team_member, list_team_members, remove_team_member

router = APIRouter(prefix="/api/websites", tags=["Team"])


@router.get("/{website_id}/team", response_model=List[schemas.TeamMemberOut], summary="List team members")
async def list_members(
    site: Website = Depends(get_owned_website),
    db: AsyncSession = Depends(get_async_db),
):
    return await list_team_members(db, site)


@router.post(
    "/{website_id}/team",
    response_model=schemas.TeamMemberOut,
    status_code=status.HTTP_201_CREATED,
    summary="Add a team member",
    description="The invitee must already have an account; they get read access to the dashboard.",
)
async def add_member(
    request: Request,
    site: Website = Depends(get_owned_website),
    db: AsyncSession = Depends(get_async_db),
):
    invite = schemas.parse_json_body(schemas.TeamInvite, await request.body())
    return await add_team_member(db, site, invite.email)


@router.delete(
    "/{website_id}/team/{member_id}",
    response_model=schemas.SuccessResponse,
    response_model_exclude_none=True,
    summary="Remove a team member",
)
async def remove_member(
    member_id: str,
    site: Website = Depends(get_owned_website),
    db: AsyncSession = Depends(get_async_db),
):
    await remove_team_member(db, site, member_id)
    return schemas.SuccessResponse()
