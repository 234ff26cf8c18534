"""
Upload model for tracking ingested files.

Stores metadata about files written through the storage backend.
The actual file bytes live in the storage backend, not the database.

Lifecycle:
1. Ingestion writes bytes to storage, then inserts the record
2. Logical delete sets deleted_at
3. A background purge removes the bytes and sets purged_at
"""
from sqlalchemy import Column, String, Integer, DateTime, Index

from filedrop.models.base import Base, generate_uuid, utc_now


class Upload(Base):
    """
    Upload metadata model.

    Attributes:
        id: Unique identifier (the upload_id handed out at prepare time)
        owner_id: Opaque identity of the uploader
        checksum: Hex SHA-256 of the content, used for deduplication
        storage_key: Key of the object in the storage backend (never reused)
        storage_provider: "local" or "s3"
        original_name: Filename declared by the client
        mime_type: Verified MIME type
        size: Size in bytes
        url: Public URL computed at ingestion time
        signed_url: Cached signed URL (if the backend supports them)
        signed_url_expires_at: Expiry of the cached signed URL
        created_at: Ingestion time
        deleted_at: Soft-delete marker
        purged_at: When storage bytes were reclaimed
    """
    __tablename__ = "uploads"

    id = Column(String, primary_key=True, default=generate_uuid)

    owner_id = Column(String, nullable=False, index=True)

    checksum = Column(String(64), nullable=False)

    # Example: users/{owner_id}/2026/10/report-1760832000000-1a2b3c4d.pdf
    storage_key = Column(String, nullable=False, unique=True)
    storage_provider = Column(String, nullable=False, default="local")

    original_name = Column(String, nullable=False)
    mime_type = Column(String, nullable=False)
    size = Column(Integer, nullable=False)
    url = Column(String, nullable=True)

    # Signed URL cache
    signed_url = Column(String, nullable=True)
    signed_url_expires_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    purged_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        # Deduplication lookup
        Index('ix_uploads_owner_checksum', 'owner_id', 'checksum'),
        # Purge sweep
        Index('ix_uploads_deleted_at', 'deleted_at'),
    )

    @property
    def filename(self) -> str:
        """Stored filename (last segment of the storage key)."""
        return self.storage_key.rsplit("/", 1)[-1]

    def __repr__(self):
        return (
            f"<Upload(id={self.id}, owner={self.owner_id}, "
            f"key={self.storage_key}, size={self.size})>"
        )
