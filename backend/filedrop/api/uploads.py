"""
Upload endpoints.

Two-step upload flow:
1. POST /uploads/prepare - Get a single-use upload token
2. PUT /uploads/{upload_id} - Send the file bytes with the token

The token binds the transfer to the caller, the declared filename, MIME
type and size. Ingestion checks the bytes against those declarations,
deduplicates per owner and writes through the configured storage backend.
"""
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from filedrop.auth.dependencies import Caller, get_current_caller, get_services, require_scopes
from filedrop.database import get_db
from filedrop.exceptions import UnsupportedMediaType
from filedrop.schemas.upload import (
    PrepareUploadRequest,
    PrepareUploadResponse,
    UploadResponse,
    UploadUrlResponse,
)
from filedrop.services import Services

router = APIRouter()
logger = logging.getLogger(__name__)


def _to_response(upload, deduplicated: bool = False) -> UploadResponse:
    response = UploadResponse.model_validate(upload)
    response.deduplicated = deduplicated
    return response


@router.post("/prepare", response_model=PrepareUploadResponse, status_code=status.HTTP_201_CREATED)
async def prepare_upload(
    request: PrepareUploadRequest,
    caller: Caller = Depends(require_scopes("uploads:write")),
    services: Services = Depends(get_services),
):
    """
    Authorize an upload.

    Checks the billing gate and the MIME allow-list before issuing a
    token. The client then PUTs the bytes to upload_url with the token in
    the X-Upload-Token header before expires_at.
    """
    allowed, reason = await services.billing.can_upload(caller.owner_id, request.size)
    if not allowed:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=reason or "Upload not allowed"
        )

    if not services.ingestion.is_mime_allowed(request.mime_type):
        raise UnsupportedMediaType(f"File type not allowed: {request.mime_type}")

    upload_token = services.upload_tokens.prepare(
        owner_id=caller.owner_id,
        filename=request.filename,
        mime_type=request.mime_type,
        declared_size=request.size,
    )

    return PrepareUploadResponse(
        upload_id=upload_token.upload_id,
        token=upload_token.token,
        upload_url=f"/api/uploads/{upload_token.upload_id}",
        expires_at=upload_token.expires_at,
        max_file_size=upload_token.max_file_size,
    )


@router.put("/{upload_id}", response_model=UploadResponse)
async def put_upload(
    upload_id: str,
    request: Request,
    response: Response,
    x_upload_token: str = Header(None, alias="X-Upload-Token"),
    content_type: str = Header(None, alias="Content-Type"),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    """
    Receive the file bytes for a prepared upload.

    Authenticated by the upload token alone. Returns 201 for a new record
    and 200 when identical content was already stored for the owner.
    Bodies larger than the token allows are cut off with 413 while
    streaming.
    """
    body = await services.ingestion.receive(x_upload_token, request.stream(), upload_id=upload_id)

    result = await services.ingestion.ingest(
        db,
        token=x_upload_token,
        data=body,
        mime_type=content_type,
        upload_id=upload_id,
    )

    response.status_code = status.HTTP_201_CREATED if result.created else status.HTTP_200_OK
    return _to_response(result.upload, deduplicated=not result.created)


@router.get("/{upload_id}", response_model=UploadResponse)
async def get_upload(
    upload_id: str,
    db: AsyncSession = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
    services: Services = Depends(get_services),
):
    """Get an upload record owned by the caller."""
    upload = await services.ingestion.get_upload(db, caller.owner_id, upload_id)
    return _to_response(upload)


@router.get("/{upload_id}/url", response_model=UploadUrlResponse)
async def get_upload_url(
    upload_id: str,
    db: AsyncSession = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
    services: Services = Depends(get_services),
):
    """
    Get a URL the file can be read from.

    Signed (time-limited) where the backend supports it, public otherwise.
    """
    upload = await services.ingestion.get_upload(db, caller.owner_id, upload_id)
    url = await services.ingestion.get_access_url(db, upload)
    return UploadUrlResponse(id=upload.id, url=url)


@router.delete("/{upload_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_upload(
    upload_id: str,
    db: AsyncSession = Depends(get_db),
    caller: Caller = Depends(require_scopes("uploads:write")),
    services: Services = Depends(get_services),
):
    """Soft-delete an upload. Storage is reclaimed by the purge task."""
    await services.ingestion.delete_upload(db, caller.owner_id, upload_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
