"""
Pydantic schemas for upload endpoints.
"""
from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime


class PrepareUploadRequest(BaseModel):
    """Request schema for an upload authorization."""
    filename: str = Field(..., min_length=1, max_length=255, description="Original filename")
    mime_type: str = Field(..., min_length=1, description="MIME type of the file (e.g., 'image/png')")
    size: int = Field(..., gt=0, description="File size in bytes")

    class Config:
        json_schema_extra = {
            "example": {
                "filename": "report.pdf",
                "mime_type": "application/pdf",
                "size": 1048576
            }
        }


class PrepareUploadResponse(BaseModel):
    """Response schema for an upload authorization."""
    upload_id: str = Field(..., description="Upload ID, also the ID of the resulting record")
    token: str = Field(..., description="Single-use token, sent back in X-Upload-Token")
    upload_url: str = Field(..., description="Path to PUT the file bytes to")
    expires_at: datetime = Field(..., description="Token expiry")
    max_file_size: int = Field(..., description="Maximum accepted size in bytes")


class UploadResponse(BaseModel):
    """Public fields of an upload record."""
    id: str
    filename: str
    original_name: str
    mime_type: str
    size: int
    url: Optional[str] = None
    checksum: str
    created_at: datetime
    deduplicated: bool = False

    class Config:
        from_attributes = True


class UploadUrlResponse(BaseModel):
    """Response schema for file access."""
    id: str
    url: str
