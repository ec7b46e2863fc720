"""Queue and job persistence models."""

from datetime import datetime

from sqlalchemy import Column, String, Integer, BigInteger, DateTime, Boolean, Text, ForeignKey, Index, UniqueConstraint, text
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import relationship


Base = declarative_base()


# Upload item statuses
UPLOAD_PENDING = "pending"
UPLOAD_UPLOADING = "uploading"
UPLOAD_COMPLETED = "completed"
UPLOAD_FAILED = "failed"
UPLOAD_STATUSES = (UPLOAD_PENDING, UPLOAD_UPLOADING, UPLOAD_COMPLETED, UPLOAD_FAILED)

# Album job statuses
ALBUM_PENDING = "PENDING"
ALBUM_UPLOADING = "UPLOADING"
ALBUM_CREATING = "CREATING"
ALBUM_UPDATING = "UPDATING"
ALBUM_COMPLETED = "COMPLETED"
ALBUM_FAILED = "FAILED"
ALBUM_CANCELLED = "CANCELLED"
ALBUM_STATUSES = (
    ALBUM_PENDING,
    ALBUM_UPLOADING,
    ALBUM_CREATING,
    ALBUM_UPDATING,
    ALBUM_COMPLETED,
    ALBUM_FAILED,
    ALBUM_CANCELLED,
)
ALBUM_IN_PROGRESS_STATUSES = (ALBUM_UPLOADING, ALBUM_CREATING, ALBUM_UPDATING)

MODE_CREATE = "CREATE"
MODE_UPDATE = "UPDATE"

# Album membership statuses
MEMBER_PENDING = "PENDING"
MEMBER_UPLOADED = "UPLOADED"
MEMBER_FAILED = "FAILED"
MEMBER_FAILED_ADD = "FAILED_ADD"
MEMBER_TERMINAL_STATUSES = (MEMBER_UPLOADED, MEMBER_FAILED, MEMBER_FAILED_ADD)


class UploadItem(Base):
    """One source file waiting for transfer to the remote library."""

    __tablename__ = "upload_queue"

    id = Column(Integer, primary_key=True)
    owner_identity = Column(String(255), nullable=False, index=True)
    source_file_id = Column(String(255), nullable=False)
    display_name = Column(String(1024), nullable=False)
    content_type = Column(String(255), nullable=False)
    size_bytes = Column(BigInteger, nullable=True)
    status = Column(String(20), nullable=False, default=UPLOAD_PENDING)

    added_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    error = Column(Text, nullable=True)
    remote_item_id = Column(String(512), nullable=True)

    __table_args__ = (
        Index("idx_upload_queue_owner_status", "owner_identity", "status"),
        # No duplicate live enqueue; failed rows may be re-added.
        Index(
            "uq_upload_queue_owner_file_live",
            "owner_identity",
            "source_file_id",
            unique=True,
            sqlite_where=text("status != 'failed'"),
            postgresql_where=text("status != 'failed'"),
        ),
    )


class UploadRecord(Base):
    """Known-transferred file: the durable result of a successful upload."""

    __tablename__ = "uploads"

    id = Column(Integer, primary_key=True)
    owner_identity = Column(String(255), nullable=False, index=True)
    source_file_id = Column(String(255), nullable=False)
    remote_item_id = Column(String(512), nullable=False)
    display_name = Column(String(1024), nullable=True)
    content_type = Column(String(255), nullable=True)
    size_bytes = Column(BigInteger, nullable=True)
    uploaded_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("owner_identity", "source_file_id", name="uq_uploads_owner_file"),
    )


class IgnoredFile(Base):
    """Files excluded from transfer (e.g. empty files)."""

    __tablename__ = "ignored_files"

    id = Column(Integer, primary_key=True)
    owner_identity = Column(String(255), nullable=False)
    source_file_id = Column(String(255), nullable=False)
    display_name = Column(String(1024), nullable=True)
    reason = Column(String(255), nullable=True)
    ignored_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("owner_identity", "source_file_id", name="uq_ignored_files_owner_file"),
    )


class SourceFileCache(Base):
    """Cached source-store metadata, populated during folder enumeration."""

    __tablename__ = "source_file_cache"

    id = Column(Integer, primary_key=True)
    owner_identity = Column(String(255), nullable=False)
    source_file_id = Column(String(255), nullable=False)
    parent_folder_id = Column(String(255), nullable=True, index=True)
    name = Column(String(1024), nullable=True)
    content_type = Column(String(255), nullable=True)
    size_bytes = Column(BigInteger, nullable=True)
    cached_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("owner_identity", "source_file_id", name="uq_source_file_cache_owner_file"),
    )


class AlbumJob(Base):
    """One folder's album creation or update job."""

    __tablename__ = "album_queue"

    id = Column(Integer, primary_key=True)
    owner_identity = Column(String(255), nullable=False, index=True)
    source_folder_id = Column(String(255), nullable=False)
    folder_name = Column(String(1024), nullable=False)
    status = Column(String(20), nullable=False, default=ALBUM_PENDING)
    mode = Column(String(10), nullable=True)  # CREATE / UPDATE, null while PENDING
    total_files = Column(Integer, nullable=True)
    uploaded_files = Column(Integer, nullable=False, default=0)
    remote_album_id = Column(String(512), nullable=True)
    remote_album_url = Column(String(1024), nullable=True)
    error = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    memberships = relationship(
        "AlbumMembership",
        back_populates="album_job",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("idx_album_queue_owner_status", "owner_identity", "status"),
        Index("idx_album_queue_owner_folder", "owner_identity", "source_folder_id"),
    )


class AlbumMembership(Base):
    """Join row between an album job and one enumerated source file."""

    __tablename__ = "album_items"

    id = Column(Integer, primary_key=True)
    album_job_id = Column(Integer, ForeignKey("album_queue.id", ondelete="CASCADE"), nullable=False, index=True)
    source_file_id = Column(String(255), nullable=False)
    remote_item_id = Column(String(512), nullable=True)
    status = Column(String(20), nullable=False, default=MEMBER_PENDING)
    added_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    error_message = Column(Text, nullable=True)

    album_job = relationship("AlbumJob", back_populates="memberships")

    __table_args__ = (
        Index("idx_album_items_job_status", "album_job_id", "status"),
    )


class FolderAlbumMapping(Base):
    """Durable folder to remote-album link, independent of any single job."""

    __tablename__ = "folder_album_mappings"

    id = Column(Integer, primary_key=True)
    owner_identity = Column(String(255), nullable=False)
    source_folder_id = Column(String(255), nullable=False)
    folder_name = Column(String(1024), nullable=False)
    remote_album_id = Column(String(512), nullable=False)
    remote_album_url = Column(String(1024), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    last_updated_at = Column(DateTime, nullable=True)
    total_items_in_album = Column(Integer, nullable=False, default=0)
    discovered_via_remote_lookup = Column(Boolean, nullable=False, default=False)
    album_deleted = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint("owner_identity", "source_folder_id", name="uq_folder_album_mappings_owner_folder"),
    )
