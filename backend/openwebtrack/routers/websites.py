"""Website management endpoints.

Owners register sites, edit their settings (timezone, exclusion rules,
notifications), export or wipe the collected data, and delete the site.
Team members may read a site but every write here is owner-only.
"""

import uuid
from typing import List

from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from .. import schemas
from ..database import get_async_db
from ..deps import Settings, get_accessible_website, get_current_user_id, get_owned_website, get_settings
from ..models import Website
from ..services.export import export_filename, export_website_csv
from ..services.websites import (
    create_website,
    delete_website,
    list_websites,
    update_website,
    website_out,
    wipe_website_data,
)
from ..utils.clock import utcnow

router = APIRouter(
    prefix="/api/websites",
    tags=["Websites"],
    responses={
        400: {"description": "Invalid request"},
        401: {"description": "Unauthorized"},
        403: {"description": "Owner only"},
        404: {"description": "Website not found"},
    },
)


def _allow_local_domains(settings: Settings) -> bool:
    return settings.ENVIRONMENT == "development"


@router.get(
    "",
    response_model=List[schemas.WebsiteOut],
    response_model_exclude_none=True,
    summary="List my websites",
    description="Websites owned by the current user. `?stats=true` adds `visitors24h`.",
)
async def list_my_websites(
    request: Request,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_async_db),
):
    with_stats = request.query_params.get("stats") == "true"
    return await list_websites(db, user_id, with_stats=with_stats)


@router.post(
    "",
    response_model=schemas.WebsiteOut,
    response_model_exclude_none=True,
    status_code=status.HTTP_201_CREATED,
    summary="Register a website",
)
async def register_website(
    request: Request,
    user_id: uuid.UUID = Depends(get_current_user_id),
    settings: Settings = Depends(get_settings),
    db: AsyncSession = Depends(get_async_db),
):
    data = schemas.parse_json_body(schemas.WebsiteCreate, await request.body())
    site = await create_website(db, user_id, data, allow_local=_allow_local_domains(settings))
    return website_out(site)


@router.get(
    "/{website_id}",
    response_model=schemas.WebsiteOut,
    response_model_exclude_none=True,
    summary="Get a website",
)
async def get_website(
    site: Website = Depends(get_accessible_website),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    return website_out(site, is_owner=site.user_id == user_id)


@router.patch(
    "/{website_id}",
    response_model=schemas.WebsiteOut,
    response_model_exclude_none=True,
    summary="Update website settings",
    description="""
    Partial update. Any of `domain`, `timezone`, `excludedIps`,
    `excludedPaths`, `excludedCountries` and `notifications` may be sent;
    omitted fields keep their current value. Exclusion rules take effect on
    the next tracking call.
    """,
)
async def patch_website(
    request: Request,
    site: Website = Depends(get_owned_website),
    settings: Settings = Depends(get_settings),
    db: AsyncSession = Depends(get_async_db),
):
    data = schemas.parse_json_body(schemas.WebsiteUpdate, await request.body())
    site = await update_website(db, site, data, allow_local=_allow_local_domains(settings))
    return website_out(site, is_owner=True)


@router.delete(
    "/{website_id}",
    response_model=schemas.SuccessResponse,
    response_model_exclude_none=True,
    summary="Delete a website",
)
async def remove_website(
    site: Website = Depends(get_owned_website),
    db: AsyncSession = Depends(get_async_db),
):
    await delete_website(db, site)
    return schemas.SuccessResponse()


@router.delete(
    "/{website_id}/data",
    response_model=schemas.SuccessResponse,
    response_model_exclude_none=True,
    summary="Wipe analytics data",
    description="Deletes every visitor, session, pageview, event and payment; the website and its settings stay.",
)
async def wipe_data(
    site: Website = Depends(get_owned_website),
    db: AsyncSession = Depends(get_async_db),
):
    await wipe_website_data(db, site)
    return schemas.SuccessResponse(message="All analytics data has been wiped")


@router.get("/{website_id}/export", summary="Export analytics data as CSV")
async def export_data(
    site: Website = Depends(get_owned_website),
    db: AsyncSession = Depends(get_async_db),
):
    content = await export_website_csv(db, site)
    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{export_filename(site, utcnow())}"'},
    )
