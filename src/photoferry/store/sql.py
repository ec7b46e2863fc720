"""SQLAlchemy implementation of the job store."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
import logging
from typing import Any, Dict, Iterable, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker

from photoferry.metadata import (
    ALBUM_CANCELLED,
    ALBUM_FAILED,
    ALBUM_IN_PROGRESS_STATUSES,
    ALBUM_PENDING,
    ALBUM_STATUSES,
    MEMBER_FAILED,
    MEMBER_PENDING,
    MEMBER_UPLOADED,
    UPLOAD_COMPLETED,
    UPLOAD_FAILED,
    UPLOAD_PENDING,
    UPLOAD_STATUSES,
    UPLOAD_UPLOADING,
    AlbumJob,
    AlbumMembership,
    FolderAlbumMapping,
    IgnoredFile,
    SourceFileCache,
    UploadItem,
    UploadRecord,
)
from photoferry.store.base import EnqueueResult, JobStore, NewUploadItem


logger = logging.getLogger(__name__)

ALREADY_QUEUED = "Already in queue"
ALREADY_UPLOADED = "Already uploaded"


class SqlJobStore(JobStore):
    """Job store over a SQLAlchemy session factory.

    Each method runs in its own short transaction so worker threads never
    share a session. Returned rows are detached; the factory must be built
    with ``expire_on_commit=False`` (see ``database.build_session_factory``).
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @contextmanager
    def _session(self):
        session: Session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # Upload items

    def add_upload_items(self, identity: str, items: Sequence[NewUploadItem]) -> EnqueueResult:
        result = EnqueueResult()
        if not items:
            return result

        file_ids = [item.source_file_id for item in items]
        with self._session() as session:
            live_ids = {
                row[0]
                for row in session.query(UploadItem.source_file_id)
                .filter(
                    UploadItem.owner_identity == identity,
                    UploadItem.source_file_id.in_(file_ids),
                    UploadItem.status != UPLOAD_FAILED,
                )
                .all()
            }
            uploaded_ids = {
                row[0]
                for row in session.query(UploadRecord.source_file_id)
                .filter(
                    UploadRecord.owner_identity == identity,
                    UploadRecord.source_file_id.in_(file_ids),
                )
                .all()
            }

            seen: set[str] = set()
            for item in items:
                file_id = item.source_file_id
                if file_id in live_ids or file_id in seen:
                    result.skip(file_id, ALREADY_QUEUED)
                    continue
                if file_id in uploaded_ids:
                    result.skip(file_id, ALREADY_UPLOADED)
                    continue
                seen.add(file_id)
                session.add(
                    UploadItem(
                        owner_identity=identity,
                        source_file_id=file_id,
                        display_name=item.display_name,
                        content_type=item.content_type,
                        size_bytes=item.size_bytes,
                        status=UPLOAD_PENDING,
                        added_at=datetime.utcnow(),
                    )
                )
                result.added.append(file_id)
        return result

    def get_upload_items(self, identity: str, status: Optional[str] = None) -> list:
        with self._session() as session:
            query = session.query(UploadItem).filter(UploadItem.owner_identity == identity)
            if status:
                query = query.filter(UploadItem.status == status)
            return query.order_by(UploadItem.added_at.asc(), UploadItem.id.asc()).all()

    def get_upload_item(self, identity: str, item_id: int):
        with self._session() as session:
            return (
                session.query(UploadItem)
                .filter(UploadItem.owner_identity == identity, UploadItem.id == item_id)
                .first()
            )

    def find_upload_item(self, identity: str, source_file_id: str):
        with self._session() as session:
            rows = (
                session.query(UploadItem)
                .filter(
                    UploadItem.owner_identity == identity,
                    UploadItem.source_file_id == source_file_id,
                )
                .order_by(UploadItem.id.desc())
                .all()
            )
        for row in rows:
            if row.status != UPLOAD_FAILED:
                return row
        return rows[0] if rows else None

    def update_upload_item(self, identity: str, item_id: int, **fields) -> bool:
        if not fields:
            return False
        with self._session() as session:
            count = (
                session.query(UploadItem)
                .filter(UploadItem.owner_identity == identity, UploadItem.id == item_id)
                .update(fields, synchronize_session=False)
            )
        return count > 0

    def delete_upload_item(self, identity: str, item_id: int) -> bool:
        with self._session() as session:
            count = (
                session.query(UploadItem)
                .filter(UploadItem.owner_identity == identity, UploadItem.id == item_id)
                .delete(synchronize_session=False)
            )
        return count > 0

    def _transition_upload_item(self, identity: str, item_id: int, from_status: str, fields: Dict[str, Any]) -> bool:
        with self._session() as session:
            count = (
                session.query(UploadItem)
                .filter(
                    UploadItem.owner_identity == identity,
                    UploadItem.id == item_id,
                    UploadItem.status == from_status,
                )
                .update(fields, synchronize_session=False)
            )
        return count > 0

    def claim_upload_item(self, identity: str, item_id: int) -> bool:
        return self._transition_upload_item(
            identity,
            item_id,
            UPLOAD_PENDING,
            {"status": UPLOAD_UPLOADING, "started_at": datetime.utcnow(), "error": None},
        )

    def finish_upload_item(
        self,
        identity: str,
        item_id: int,
        *,
        success: bool,
        remote_item_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> bool:
        fields: Dict[str, Any] = {
            "status": UPLOAD_COMPLETED if success else UPLOAD_FAILED,
            "completed_at": datetime.utcnow(),
            "error": None if success else (error or "Unknown error"),
        }
        if success:
            fields["remote_item_id"] = remote_item_id
        return self._transition_upload_item(identity, item_id, UPLOAD_UPLOADING, fields)

    def revert_uploading_item(self, identity: str, item_id: int) -> bool:
        return self._transition_upload_item(
            identity,
            item_id,
            UPLOAD_UPLOADING,
            {"status": UPLOAD_PENDING, "started_at": None},
        )

    def reset_stuck_uploading_items(self, identity: str) -> int:
        with self._session() as session:
            count = (
                session.query(UploadItem)
                .filter(UploadItem.owner_identity == identity, UploadItem.status == UPLOAD_UPLOADING)
                .update({"status": UPLOAD_PENDING, "started_at": None}, synchronize_session=False)
            )
        if count:
            logger.info("Reset %s stuck uploading item(s) for %s", count, identity)
        return count

    def fail_uploading_items(self, identity: str, error: str) -> int:
        with self._session() as session:
            count = (
                session.query(UploadItem)
                .filter(UploadItem.owner_identity == identity, UploadItem.status == UPLOAD_UPLOADING)
                .update(
                    {"status": UPLOAD_FAILED, "error": error, "completed_at": datetime.utcnow()},
                    synchronize_session=False,
                )
            )
        return count

    def requeue_upload_items(
        self,
        identity: str,
        item_ids: Optional[Iterable[int]] = None,
        *,
        statuses: Sequence[str] = (UPLOAD_FAILED,),
    ) -> int:
        requeued = 0
        with self._session() as session:
            query = session.query(UploadItem).filter(
                UploadItem.owner_identity == identity,
                UploadItem.status.in_(list(statuses)),
            )
            if item_ids is not None:
                query = query.filter(UploadItem.id.in_(list(item_ids)))
            candidates = query.order_by(UploadItem.id.desc()).all()

            live_ids = {
                row[0]
                for row in session.query(UploadItem.source_file_id)
                .filter(
                    UploadItem.owner_identity == identity,
                    UploadItem.status != UPLOAD_FAILED,
                )
                .all()
            }
            for item in candidates:
                # A failed row may not come back while another live row exists for the file.
                if item.status == UPLOAD_FAILED and item.source_file_id in live_ids:
                    continue
                item.status = UPLOAD_PENDING
                item.error = None
                item.started_at = None
                item.completed_at = None
                item.remote_item_id = None
                live_ids.add(item.source_file_id)
                requeued += 1
                session.flush()
        return requeued

    def get_upload_queue_stats(self, identity: str) -> Dict[str, int]:
        with self._session() as session:
            rows = (
                session.query(UploadItem.status, func.count(UploadItem.id))
                .filter(UploadItem.owner_identity == identity)
                .group_by(UploadItem.status)
                .all()
            )
        stats = {status: 0 for status in UPLOAD_STATUSES}
        for status, count in rows:
            stats[status] = int(count)
        stats["total"] = sum(stats[status] for status in UPLOAD_STATUSES)
        return stats

    def clear_completed_upload_items(self, identity: str) -> int:
        with self._session() as session:
            return (
                session.query(UploadItem)
                .filter(UploadItem.owner_identity == identity, UploadItem.status == UPLOAD_COMPLETED)
                .delete(synchronize_session=False)
            )

    # Upload records

    def record_upload(
        self,
        identity: str,
        source_file_id: str,
        remote_item_id: str,
        *,
        display_name: Optional[str] = None,
        content_type: Optional[str] = None,
        size_bytes: Optional[int] = None,
    ):
        with self._session() as session:
            record = (
                session.query(UploadRecord)
                .filter(
                    UploadRecord.owner_identity == identity,
                    UploadRecord.source_file_id == source_file_id,
                )
                .first()
            )
            if record is None:
                record = UploadRecord(owner_identity=identity, source_file_id=source_file_id)
                session.add(record)
            record.remote_item_id = remote_item_id
            record.display_name = display_name
            record.content_type = content_type
            record.size_bytes = size_bytes
            record.uploaded_at = datetime.utcnow()
        return record

    def get_upload_record(self, identity: str, source_file_id: str):
        with self._session() as session:
            return (
                session.query(UploadRecord)
                .filter(
                    UploadRecord.owner_identity == identity,
                    UploadRecord.source_file_id == source_file_id,
                )
                .first()
            )

    def delete_upload_records(self, identity: str, source_file_ids: Iterable[str]) -> int:
        file_ids = list(source_file_ids)
        if not file_ids:
            return 0
        with self._session() as session:
            return (
                session.query(UploadRecord)
                .filter(
                    UploadRecord.owner_identity == identity,
                    UploadRecord.source_file_id.in_(file_ids),
                )
                .delete(synchronize_session=False)
            )

    # Ignore list and source metadata cache

    def is_file_ignored(self, identity: str, source_file_id: str) -> bool:
        with self._session() as session:
            return (
                session.query(IgnoredFile.id)
                .filter(
                    IgnoredFile.owner_identity == identity,
                    IgnoredFile.source_file_id == source_file_id,
                )
                .first()
                is not None
            )

    def ignore_file(self, identity: str, source_file_id: str, reason: str, *, display_name: Optional[str] = None) -> None:
        with self._session() as session:
            existing = (
                session.query(IgnoredFile)
                .filter(
                    IgnoredFile.owner_identity == identity,
                    IgnoredFile.source_file_id == source_file_id,
                )
                .first()
            )
            if existing is not None:
                existing.reason = reason
                return
            session.add(
                IgnoredFile(
                    owner_identity=identity,
                    source_file_id=source_file_id,
                    display_name=display_name,
                    reason=reason,
                )
            )

    def unignore_file(self, identity: str, source_file_id: str) -> bool:
        with self._session() as session:
            count = (
                session.query(IgnoredFile)
                .filter(
                    IgnoredFile.owner_identity == identity,
                    IgnoredFile.source_file_id == source_file_id,
                )
                .delete(synchronize_session=False)
            )
        return count > 0

    def cache_file_metadata(self, identity: str, entries: Iterable[Any], *, parent_folder_id: Optional[str] = None) -> int:
        entries = [entry for entry in entries if getattr(entry, "id", None)]
        if not entries:
            return 0
        with self._session() as session:
            existing = {
                row.source_file_id: row
                for row in session.query(SourceFileCache)
                .filter(
                    SourceFileCache.owner_identity == identity,
                    SourceFileCache.source_file_id.in_([entry.id for entry in entries]),
                )
                .all()
            }
            for entry in entries:
                row = existing.get(entry.id)
                if row is None:
                    row = SourceFileCache(owner_identity=identity, source_file_id=entry.id)
                    session.add(row)
                    existing[entry.id] = row
                row.name = entry.name
                row.content_type = entry.mime_type
                row.size_bytes = entry.size
                row.parent_folder_id = parent_folder_id or getattr(entry, "parent_id", None)
                row.cached_at = datetime.utcnow()
        return len(entries)

    def get_cached_file_metadata(self, identity: str, source_file_id: str):
        with self._session() as session:
            return (
                session.query(SourceFileCache)
                .filter(
                    SourceFileCache.owner_identity == identity,
                    SourceFileCache.source_file_id == source_file_id,
                )
                .first()
            )

    # Album jobs

    def add_album_job(self, identity: str, source_folder_id: str, folder_name: str):
        job = AlbumJob(
            owner_identity=identity,
            source_folder_id=source_folder_id,
            folder_name=folder_name,
            status=ALBUM_PENDING,
            uploaded_files=0,
            created_at=datetime.utcnow(),
        )
        with self._session() as session:
            session.add(job)
            session.flush()
        return job

    def find_live_album_job(self, identity: str, source_folder_id: str):
        with self._session() as session:
            return (
                session.query(AlbumJob)
                .filter(
                    AlbumJob.owner_identity == identity,
                    AlbumJob.source_folder_id == source_folder_id,
                    AlbumJob.status.in_((ALBUM_PENDING,) + ALBUM_IN_PROGRESS_STATUSES),
                )
                .first()
            )

    def get_album_jobs(self, identity: str, status: Optional[str] = None) -> list:
        with self._session() as session:
            query = session.query(AlbumJob).filter(AlbumJob.owner_identity == identity)
            if status:
                query = query.filter(AlbumJob.status == status)
            return query.order_by(AlbumJob.created_at.asc(), AlbumJob.id.asc()).all()

    def get_album_job(self, identity: str, job_id: int):
        with self._session() as session:
            return (
                session.query(AlbumJob)
                .filter(AlbumJob.owner_identity == identity, AlbumJob.id == job_id)
                .first()
            )

    def update_album_job(self, identity: str, job_id: int, **fields) -> bool:
        if not fields:
            return False
        with self._session() as session:
            count = (
                session.query(AlbumJob)
                .filter(AlbumJob.owner_identity == identity, AlbumJob.id == job_id)
                .update(fields, synchronize_session=False)
            )
        return count > 0

    def transition_album_job(self, identity: str, job_id: int, from_statuses: Sequence[str], **fields) -> bool:
        if not fields:
            return False
        with self._session() as session:
            count = (
                session.query(AlbumJob)
                .filter(
                    AlbumJob.owner_identity == identity,
                    AlbumJob.id == job_id,
                    AlbumJob.status.in_(list(from_statuses)),
                )
                .update(fields, synchronize_session=False)
            )
        return count > 0

    def delete_album_job(self, identity: str, job_id: int) -> bool:
        with self._session() as session:
            job = (
                session.query(AlbumJob)
                .filter(AlbumJob.owner_identity == identity, AlbumJob.id == job_id)
                .first()
            )
            if job is None:
                return False
            session.query(AlbumMembership).filter(AlbumMembership.album_job_id == job_id).delete(
                synchronize_session=False
            )
            session.delete(job)
        return True

    def requeue_album_jobs(self, identity: str, job_ids: Optional[Iterable[int]] = None) -> int:
        with self._session() as session:
            query = session.query(AlbumJob).filter(
                AlbumJob.owner_identity == identity,
                AlbumJob.status.in_((ALBUM_FAILED, ALBUM_CANCELLED)),
            )
            if job_ids is not None:
                query = query.filter(AlbumJob.id.in_(list(job_ids)))
            return query.update(
                {
                    "status": ALBUM_PENDING,
                    "mode": None,
                    "error": None,
                    "started_at": None,
                    "completed_at": None,
                },
                synchronize_session=False,
            )

    def get_album_queue_stats(self, identity: str) -> Dict[str, int]:
        with self._session() as session:
            rows = (
                session.query(AlbumJob.status, func.count(AlbumJob.id))
                .filter(AlbumJob.owner_identity == identity)
                .group_by(AlbumJob.status)
                .all()
            )
        stats = {status: 0 for status in ALBUM_STATUSES}
        for status, count in rows:
            stats[status] = int(count)
        stats["total"] = sum(stats[status] for status in ALBUM_STATUSES)
        return stats

    # Album memberships

    def add_album_memberships(self, job_id: int, source_file_ids: Iterable[str]) -> int:
        now = datetime.utcnow()
        rows = [
            AlbumMembership(album_job_id=job_id, source_file_id=file_id, status=MEMBER_PENDING, added_at=now)
            for file_id in source_file_ids
        ]
        if not rows:
            return 0
        with self._session() as session:
            session.add_all(rows)
        return len(rows)

    def get_album_memberships(self, job_id: int, status: Optional[str] = None) -> list:
        with self._session() as session:
            query = session.query(AlbumMembership).filter(AlbumMembership.album_job_id == job_id)
            if status:
                query = query.filter(AlbumMembership.status == status)
            return query.order_by(AlbumMembership.id.asc()).all()

    def update_album_membership(self, job_id: int, membership_id: int, **fields) -> bool:
        if not fields:
            return False
        with self._session() as session:
            count = (
                session.query(AlbumMembership)
                .filter(AlbumMembership.album_job_id == job_id, AlbumMembership.id == membership_id)
                .update(fields, synchronize_session=False)
            )
        return count > 0

    def remove_duplicate_memberships(self, job_id: int) -> int:
        with self._session() as session:
            rows = (
                session.query(AlbumMembership)
                .filter(AlbumMembership.album_job_id == job_id)
                .order_by(AlbumMembership.id.asc())
                .all()
            )
            keep: Dict[str, AlbumMembership] = {}
            doomed: list[AlbumMembership] = []
            for row in rows:
                current = keep.get(row.source_file_id)
                if current is None:
                    keep[row.source_file_id] = row
                elif row.status == MEMBER_UPLOADED and current.status != MEMBER_UPLOADED:
                    # Prefer the row that already carries a remote id.
                    doomed.append(current)
                    keep[row.source_file_id] = row
                else:
                    doomed.append(row)
            for row in doomed:
                session.delete(row)
        if doomed:
            logger.info("Removed %s duplicate membership row(s) from album job %s", len(doomed), job_id)
        return len(doomed)

    def fail_pending_memberships(self, job_id: int, error: str) -> int:
        with self._session() as session:
            return (
                session.query(AlbumMembership)
                .filter(AlbumMembership.album_job_id == job_id, AlbumMembership.status == MEMBER_PENDING)
                .update({"status": MEMBER_FAILED, "error_message": error}, synchronize_session=False)
            )

    # Folder to album mappings

    def upsert_folder_album_mapping(
        self,
        identity: str,
        source_folder_id: str,
        *,
        folder_name: str,
        remote_album_id: str,
        remote_album_url: Optional[str] = None,
        total_items_in_album: Optional[int] = None,
        discovered_via_remote_lookup: Optional[bool] = None,
        album_deleted: bool = False,
    ):
        now = datetime.utcnow()
        with self._session() as session:
            mapping = (
                session.query(FolderAlbumMapping)
                .filter(
                    FolderAlbumMapping.owner_identity == identity,
                    FolderAlbumMapping.source_folder_id == source_folder_id,
                )
                .first()
            )
            if mapping is None:
                mapping = FolderAlbumMapping(
                    owner_identity=identity,
                    source_folder_id=source_folder_id,
                    created_at=now,
                    total_items_in_album=0,
                    discovered_via_remote_lookup=False,
                )
                session.add(mapping)
            mapping.folder_name = folder_name
            mapping.remote_album_id = remote_album_id
            if remote_album_url is not None:
                mapping.remote_album_url = remote_album_url
            if total_items_in_album is not None:
                mapping.total_items_in_album = total_items_in_album
            if discovered_via_remote_lookup is not None:
                mapping.discovered_via_remote_lookup = discovered_via_remote_lookup
            mapping.album_deleted = album_deleted
            mapping.last_updated_at = now
        return mapping

    def get_folder_album_mapping(self, identity: str, source_folder_id: str):
        with self._session() as session:
            return (
                session.query(FolderAlbumMapping)
                .filter(
                    FolderAlbumMapping.owner_identity == identity,
                    FolderAlbumMapping.source_folder_id == source_folder_id,
                )
                .first()
            )

    def get_folder_album_mappings(self, identity: str, source_folder_ids: Iterable[str]) -> Dict[str, Any]:
        folder_ids = list(source_folder_ids)
        if not folder_ids:
            return {}
        with self._session() as session:
            rows = (
                session.query(FolderAlbumMapping)
                .filter(
                    FolderAlbumMapping.owner_identity == identity,
                    FolderAlbumMapping.source_folder_id.in_(folder_ids),
                )
                .all()
            )
        return {row.source_folder_id: row for row in rows}

    def mark_album_deleted(self, identity: str, source_folder_id: str) -> bool:
        with self._session() as session:
            count = (
                session.query(FolderAlbumMapping)
                .filter(
                    FolderAlbumMapping.owner_identity == identity,
                    FolderAlbumMapping.source_folder_id == source_folder_id,
                )
                .update({"album_deleted": True, "last_updated_at": datetime.utcnow()}, synchronize_session=False)
            )
        return count > 0
