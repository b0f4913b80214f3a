import enum
from datetime import datetime

from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, Integer, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

class Base(DeclarativeBase):
    pass

class FileStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    DELETED = "deleted"

class Tenant(Base):
    __tablename__ = "tenants"

    identity: Mapped[str] = mapped_column(String(16), primary_key=True)
    shard_id: Mapped[str] = mapped_column(String(64), nullable=False)
    quota_gb: Mapped[int] = mapped_column(Integer, nullable=False)
    used_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    uploads_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    downloads_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    subscription_expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_activity_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    files: Mapped[list["File"]] = relationship(back_populates="tenant")

class File(Base):
    __tablename__ = "files"
    __table_args__ = (
        Index("idx_files_tenant_active", "tenant_identity", "status", "created_at"),
        Index("idx_files_deleted", "tenant_identity", "deleted_at"),
    )

    file_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_identity: Mapped[str] = mapped_column(ForeignKey("tenants.identity"), nullable=False)

    # stable for the file's lifetime, replace overwrites the same key
    object_key: Mapped[str] = mapped_column(String(1024), nullable=False)
    size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    mime_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=FileStatus.PENDING.value)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # store ETag of the object billed in size_bytes
    etag: Mapped[str | None] = mapped_column(String(128), nullable=True)
    replace_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    tenant: Mapped[Tenant] = relationship(back_populates="files")
