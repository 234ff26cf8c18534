"""
API key endpoints.

Keys are bound to the caller's owner. The plain key is returned only by
create and rotate; afterwards only its display prefix is visible.
"""
from typing import List

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from filedrop.auth.dependencies import Caller, get_services, require_scopes
from filedrop.database import get_db
from filedrop.schemas.api_key import ApiKeyCreate, ApiKeyCreatedResponse, ApiKeyResponse
from filedrop.services import Services

router = APIRouter()

require_keys = require_scopes("api_keys:manage")


def _created(api_key, plain_key: str) -> ApiKeyCreatedResponse:
    return ApiKeyCreatedResponse(
        **ApiKeyResponse.model_validate(api_key).model_dump(),
        key=plain_key,
    )


@router.post("", response_model=ApiKeyCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_api_key(
    request: ApiKeyCreate,
    db: AsyncSession = Depends(get_db),
    caller: Caller = Depends(require_keys),
    services: Services = Depends(get_services),
):
    """Create a key. Store the returned key now: it cannot be retrieved later."""
    api_key, plain_key = await services.api_keys.create_api_key(
        db,
        owner_id=caller.owner_id,
        name=request.name,
        scopes=request.scopes,
        rate_limit=request.rate_limit,
        expires_at=request.expires_at,
    )
    return _created(api_key, plain_key)


@router.get("", response_model=List[ApiKeyResponse])
async def list_api_keys(
    db: AsyncSession = Depends(get_db),
    caller: Caller = Depends(require_keys),
    services: Services = Depends(get_services),
):
    return await services.api_keys.list_api_keys(db, caller.owner_id)


@router.post("/{key_id}/revoke", response_model=ApiKeyResponse)
async def revoke_api_key(
    key_id: str,
    db: AsyncSession = Depends(get_db),
    caller: Caller = Depends(require_keys),
    services: Services = Depends(get_services),
):
    return await services.api_keys.revoke_api_key(db, caller.owner_id, key_id)


@router.post("/{key_id}/rotate", response_model=ApiKeyCreatedResponse, status_code=status.HTTP_201_CREATED)
async def rotate_api_key(
    key_id: str,
    db: AsyncSession = Depends(get_db),
    caller: Caller = Depends(require_keys),
    services: Services = Depends(get_services),
):
    """Issue a replacement key with the same settings and revoke the old one."""
    api_key, plain_key = await services.api_keys.rotate_api_key(db, caller.owner_id, key_id)
    return _created(api_key, plain_key)
