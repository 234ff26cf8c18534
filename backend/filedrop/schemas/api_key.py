"""
Pydantic schemas for API key endpoints.
"""
from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime


class ApiKeyCreate(BaseModel):
    """Schema for creating an API key for the caller's owner."""
    name: str = Field(..., min_length=1, max_length=100)
    scopes: List[str] = Field(default_factory=list, description="Empty list means unrestricted")
    rate_limit: Optional[int] = Field(None, gt=0, description="Requests per hour")
    expires_at: Optional[datetime] = None


class ApiKeyResponse(BaseModel):
    """API key without any secret material."""
    id: str
    name: str
    key_prefix: str
    scopes: List[str]
    rate_limit: Optional[int] = None
    is_active: bool
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    usage_count: int
    created_at: datetime
    revoked_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ApiKeyCreatedResponse(ApiKeyResponse):
    """Creation/rotation response, the only one carrying the plain key."""
    key: str
