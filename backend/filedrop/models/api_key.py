"""
API key models.

Keys are stored as salted bcrypt hashes, so a presented key can only be
matched by comparing it against every active hash.
"""
from sqlalchemy import Column, String, Integer, Boolean, DateTime, JSON, ForeignKey, Index

from filedrop.models.base import Base, generate_uuid, utc_now


class ApiKey(Base):
    """API key bound to an owner identity."""
    __tablename__ = "api_keys"

    id = Column(String, primary_key=True, default=generate_uuid)
    name = Column(String, nullable=False)

    key_hash = Column(String, nullable=False)
    # Display-only prefix, e.g. "fd_test_1a2b3c4d"
    key_prefix = Column(String, nullable=False)

    owner_id = Column(String, nullable=False, index=True)
    scopes = Column(JSON, nullable=False, default=list)

    # Requests allowed per rate window; None means unlimited
    rate_limit = Column(Integer, nullable=True, default=1000)

    is_active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    usage_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    revoked_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<ApiKey(id={self.id}, prefix={self.key_prefix}, owner={self.owner_id})>"


class ApiKeyUsage(Base):
    """One row per authenticated request, counted by the rate window."""
    __tablename__ = "api_key_usage"

    id = Column(String, primary_key=True, default=generate_uuid)
    api_key_id = Column(
        String,
        ForeignKey("api_keys.id", ondelete="CASCADE"),
        nullable=False,
    )
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    __table_args__ = (
        Index('ix_api_key_usage_key_created', 'api_key_id', 'created_at'),
    )
