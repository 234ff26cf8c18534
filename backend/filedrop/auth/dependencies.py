"""
FastAPI dependencies for authentication and service access.
Provides get_current_caller, which verifies the X-API-Key header.
"""
from dataclasses import dataclass, field
from typing import List

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader
from sqlalchemy.ext.asyncio import AsyncSession

from filedrop.database import get_db
from filedrop.exceptions import RateLimited, Unauthorized
from filedrop.services import Services

# APIKeyHeader scheme for extracting the X-API-Key header
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


@dataclass
class Caller:
    """Identity resolved from an API key."""
    owner_id: str
    api_key_id: str
    scopes: List[str] = field(default_factory=list)


def get_services(request: Request) -> Services:
    """Services built by the application lifespan."""
    return request.app.state.services


async def get_current_caller(
    presented_key: str = Depends(api_key_header),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Caller:
    """
    FastAPI dependency that verifies an API key and returns the caller.

    Raises:
        HTTPException 401: If the key is missing, invalid, revoked or expired
        HTTPException 429: If the key is over its rate limit
    """
    try:
        api_key = await services.api_keys.authenticate(db, presented_key)
    except RateLimited as e:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=e.message,
        )
    except Unauthorized as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.message,
            headers={"WWW-Authenticate": "ApiKey"},
        )

    return Caller(
        owner_id=api_key.owner_id,
        api_key_id=api_key.id,
        scopes=list(api_key.scopes or []),
    )


def require_scopes(*required: str):
    """
    Dependency factory checking the caller's key carries every scope.

    Keys created without scopes are unrestricted.
    """
    async def _check(caller: Caller = Depends(get_current_caller)) -> Caller:
        if caller.scopes:
            missing = [s for s in required if s not in caller.scopes]
            if missing:
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail=f"Missing required scopes: {', '.join(missing)}",
                )
        return caller

    return _check
