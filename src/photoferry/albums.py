"""Album queue orchestration: per-folder upload, join and album reconciliation."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
import logging
from threading import Thread
import time
from typing import Callable, Optional

from photoferry.backoff import BackoffController
from photoferry.coordination import CancellationToken, RunRegistry
from photoferry.errors import DuplicateJobError, JoinTimeoutError, OperationCancelled
from photoferry.metadata import (
    ALBUM_CANCELLED,
    ALBUM_COMPLETED,
    ALBUM_CREATING,
    ALBUM_FAILED,
    ALBUM_IN_PROGRESS_STATUSES,
    ALBUM_PENDING,
    ALBUM_UPDATING,
    ALBUM_UPLOADING,
    MEMBER_FAILED,
    MEMBER_FAILED_ADD,
    MEMBER_PENDING,
    MEMBER_UPLOADED,
    MODE_CREATE,
    MODE_UPDATE,
    UPLOAD_COMPLETED,
    UPLOAD_FAILED,
)
from photoferry.photos import GooglePhotosClient, RemoteAlbum
from photoferry.progress import ProgressReporter
from photoferry.retry import RetryPolicy, run_with_retry
from photoferry.settings import settings
from photoferry.storage import GoogleCredentials, GoogleDriveSource
from photoferry.store import ALREADY_QUEUED, ALREADY_UPLOADED, EnqueueResult, JobStore
from photoferry.uploads import IGNORED_FILE, STOPPED_BY_USER, UploadOrchestrator


logger = logging.getLogger(__name__)

JOB_CANCELLED = "Album job cancelled"
NOT_QUEUED = "File is not in the upload queue"
INVALID_REMOTE_ID = "Invalid media item id"


@dataclass
class AlbumRunResult:
    total: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    cancelled: bool = False


class AlbumOrchestrator:
    """Processes an identity's album jobs one folder at a time.

    A job enumerates its folder, delegates missing files to the upload
    orchestrator, polls until every membership row is settled, then
    creates or reuses the remote album and adds the uploaded items,
    re-uploading items the album rejects as invalid.
    """

    def __init__(
        self,
        store: JobStore,
        source: GoogleDriveSource,
        photos: GooglePhotosClient,
        uploads: UploadOrchestrator,
        *,
        backoff: Optional[BackoffController] = None,
        progress: Optional[ProgressReporter] = None,
        retry_policy: Optional[RetryPolicy] = None,
        poll_interval: Optional[float] = None,
        upload_timeout: Optional[float] = None,
        reupload_timeout: Optional[float] = None,
        enumeration_timeout: Optional[float] = None,
        repair_max_attempts: Optional[int] = None,
        title_match_policy: Optional[str] = None,
        min_remote_id_length: Optional[int] = None,
        album_add_batch_size: Optional[int] = None,
        upload_starter: Optional[Callable[[str, GoogleCredentials], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._source = source
        self._photos = photos
        self._uploads = uploads
        self._backoff = backoff or BackoffController()
        self._progress = progress or ProgressReporter()
        self._retry_policy = retry_policy or RetryPolicy.from_settings()
        self._poll_interval = settings.album_poll_interval_seconds if poll_interval is None else poll_interval
        self._upload_timeout = settings.album_upload_timeout_seconds if upload_timeout is None else upload_timeout
        self._reupload_timeout = (
            settings.album_reupload_timeout_seconds if reupload_timeout is None else reupload_timeout
        )
        self._enumeration_timeout = (
            settings.album_enumeration_timeout_seconds if enumeration_timeout is None else enumeration_timeout
        )
        self._repair_max_attempts = (
            settings.album_repair_max_attempts if repair_max_attempts is None else repair_max_attempts
        )
        self._title_match_policy = (title_match_policy or settings.album_title_match_policy).lower()
        self._min_remote_id_length = (
            settings.min_remote_item_id_length if min_remote_id_length is None else min_remote_id_length
        )
        self._album_add_batch_size = album_add_batch_size or settings.effective_album_add_batch_size
        self._upload_starter = upload_starter or self._start_uploads_in_background
        self._clock = clock
        self._runs = RunRegistry()

    def is_running(self, identity: str) -> bool:
        return self._runs.is_active(identity)

    def enqueue(self, identity: str, source_folder_id: str, folder_name: str):
        """Queue a folder; a second live job for the same folder is rejected."""
        existing = self._store.find_live_album_job(identity, source_folder_id)
        if existing is not None:
            raise DuplicateJobError(
                f"Folder {folder_name!r} already has a {existing.status} album job ({existing.id})"
            )
        job = self._store.add_album_job(identity, source_folder_id, folder_name)
        logger.info("Queued album job %s for folder %s (%s)", job.id, folder_name, identity)
        return job

    # Discovery

    def discover_album_for_folder(
        self,
        identity: str,
        credentials: GoogleCredentials,
        source_folder_id: str,
        folder_name: str,
        *,
        token: Optional[CancellationToken] = None,
    ):
        """Return the live mapping for a folder, discovering a remote album by title if needed."""
        mapping = self._store.get_folder_album_mapping(identity, source_folder_id)
        if mapping is not None and not mapping.album_deleted:
            return mapping

        album = self._find_album_by_title(identity, credentials, folder_name, token)
        if album is None:
            return None

        details = self._call(identity, token, lambda: self._photos.get_album(credentials, album.id))
        if details is None:
            logger.info("Discovered album %s for %s no longer exists", album.id, folder_name)
            return None

        mapping = self._store.upsert_folder_album_mapping(
            identity,
            source_folder_id,
            folder_name=folder_name,
            remote_album_id=album.id,
            remote_album_url=album.url or details.url,
            total_items_in_album=details.media_items_count or 0,
            discovered_via_remote_lookup=True,
            album_deleted=False,
        )
        logger.info("Discovered existing album %s for folder %s (%s)", album.id, folder_name, identity)
        return mapping

    def _find_album_by_title(
        self,
        identity: str,
        credentials: GoogleCredentials,
        title: str,
        token: Optional[CancellationToken],
    ) -> Optional[RemoteAlbum]:
        try:
            albums = self._call(identity, token, lambda: self._photos.list_albums(credentials))
        except OperationCancelled:
            raise
        except Exception as exc:
            # Discovery is best effort; the job proceeds in CREATE mode.
            logger.warning("Could not list remote albums for %s: %s", identity, exc)
            return None

        matches = [album for album in albums if album.title == title]
        if not matches:
            return None
        if self._title_match_policy == "unique" and len(matches) > 1:
            logger.warning(
                "%s remote albums are titled %r, not adopting any under the unique match policy",
                len(matches),
                title,
            )
            return None
        return matches[0]

    # Folder-wide enqueue

    def enqueue_all(
        self,
        identity: str,
        credentials: GoogleCredentials,
        folder_id: str,
        folder_name: Optional[str] = None,
    ) -> EnqueueResult:
        """Queue every file under a folder tree for upload, without an album job."""
        tracking_id = self._progress.start(
            identity,
            "enqueue",
            "Enqueue All",
            metadata={"root_folder_id": folder_id, "folder_name": folder_name or folder_id},
        )
        try:
            file_ids = self._enumerate_folder(identity, credentials, folder_id, CancellationToken())
            self._progress.update(tracking_id, 0, len(file_ids))
            result = self._uploads.enqueue(identity, credentials, file_ids)
        except Exception as exc:
            self._progress.fail(identity, tracking_id, str(exc) or exc.__class__.__name__)
            raise

        self._progress.update(tracking_id, len(file_ids), len(file_ids))
        self._progress.complete(
            identity,
            tracking_id,
            {"added": len(result.added), "skipped": len(result.skipped)},
        )
        return result

    # Run

    def start_processing(self, identity: str, credentials: GoogleCredentials) -> Optional[AlbumRunResult]:
        """Process every PENDING job sequentially; None if a run is already active."""
        state = self._runs.begin(identity)
        if state is None:
            logger.info("Album processing already running for %s, skipping", identity)
            return None

        result = AlbumRunResult()
        try:
            jobs = self._store.get_album_jobs(identity, ALBUM_PENDING)
            result.total = len(jobs)
            if not jobs:
                logger.info("No pending album jobs for %s", identity)
                return result

            tracking_id = self._progress.start(identity, "album", "Creating Albums", total=len(jobs))
            state.tracking_id = tracking_id
            for index, job in enumerate(jobs):
                if state.token.cancelled:
                    logger.info("Album processing stopped for %s", identity)
                    break
                if not self._claim_job(identity, job):
                    result.skipped += 1
                elif self._run_job(identity, credentials, job, state.token):
                    result.completed += 1
                else:
                    result.failed += 1
                self._progress.update(tracking_id, index + 1, len(jobs))

            result.cancelled = state.stop_requested or state.token.cancelled
            if result.cancelled:
                self._progress.fail(identity, tracking_id, STOPPED_BY_USER)
            else:
                self._progress.complete(
                    identity,
                    tracking_id,
                    {
                        "completed": result.completed,
                        "failed": result.failed,
                        "skipped": result.skipped,
                        "total": result.total,
                    },
                )
            logger.info(
                "Album run finished for %s: %s completed, %s failed, %s skipped",
                identity,
                result.completed,
                result.failed,
                result.skipped,
            )
            return result
        finally:
            self._runs.end(state)

    def stop_processing(self, identity: str) -> int:
        """Cancel the in-flight job and fail its unsettled membership rows."""
        logger.info("Stop album processing requested for %s", identity)
        state = self._runs.get(identity)
        if state is not None:
            state.stop_requested = True
            state.token.cancel()

        failed = 0
        for status in ALBUM_IN_PROGRESS_STATUSES:
            for job in self._store.get_album_jobs(identity, status):
                failed += self._store.fail_pending_memberships(job.id, STOPPED_BY_USER)
        self._progress.fail_identity(identity, STOPPED_BY_USER)
        return failed

    def process_job(
        self,
        identity: str,
        credentials: GoogleCredentials,
        job,
        *,
        token: Optional[CancellationToken] = None,
    ) -> bool:
        """Claim a PENDING job and run its full pipeline; returns True when it completed."""
        if not self._claim_job(identity, job):
            return False
        return self._run_job(identity, credentials, job, token or CancellationToken())

    def _claim_job(self, identity: str, job) -> bool:
        claimed = self._store.transition_album_job(
            identity,
            job.id,
            (ALBUM_PENDING,),
            status=ALBUM_UPLOADING,
            started_at=datetime.utcnow(),
            error=None,
        )
        if not claimed:
            logger.info("Album job %s is no longer PENDING, skipping", job.id)
        return claimed

    def _run_job(self, identity: str, credentials: GoogleCredentials, job, token: CancellationToken) -> bool:
        logger.info("Processing album job %s (%s) for %s", job.id, job.folder_name, identity)
        try:
            self._process_job(identity, credentials, job, token)
            return True
        except OperationCancelled as exc:
            logger.info("Album job %s stopped: %s", job.id, exc)
            self._fail_job(identity, job.id, STOPPED_BY_USER)
            return False
        except Exception as exc:
            logger.exception("Album job %s (%s) failed", job.id, job.folder_name)
            self._fail_job(identity, job.id, str(exc) or exc.__class__.__name__)
            return False

    def _fail_job(self, identity: str, job_id: int, error: str) -> None:
        failed = self._store.transition_album_job(
            identity,
            job_id,
            ALBUM_IN_PROGRESS_STATUSES,
            status=ALBUM_FAILED,
            error=error,
            completed_at=datetime.utcnow(),
        )
        if failed:
            self._store.fail_pending_memberships(job_id, error)
            return
        current = self._store.get_album_job(identity, job_id)
        if current is not None and current.status == ALBUM_CANCELLED:
            self._store.fail_pending_memberships(job_id, JOB_CANCELLED)
            logger.info("Album job %s was cancelled", job_id)

    def _advance_job(self, identity: str, job_id: int, from_statuses: tuple, **fields) -> None:
        """Conditional job transition; a job moved elsewhere (cancelled or deleted) aborts the run."""
        if not self._store.transition_album_job(identity, job_id, from_statuses, **fields):
            raise OperationCancelled(JOB_CANCELLED)

    def _ensure_not_cancelled(self, identity: str, job_id: int) -> None:
        job = self._store.get_album_job(identity, job_id)
        if job is None or job.status == ALBUM_CANCELLED:
            raise OperationCancelled(JOB_CANCELLED)

    def _process_job(self, identity: str, credentials: GoogleCredentials, job, token: CancellationToken) -> None:
        # Mode selection
        mapping = self.discover_album_for_folder(
            identity,
            credentials,
            job.source_folder_id,
            job.folder_name,
            token=token,
        )
        mode = MODE_UPDATE if mapping is not None else MODE_CREATE
        self._advance_job(identity, job.id, (ALBUM_UPLOADING,), mode=mode)
        logger.info("Album job %s mode: %s", job.id, mode)

        # Enumeration
        file_ids = self._enumerate_folder(identity, credentials, job.source_folder_id, token)
        if job.total_files is None or len(file_ids) > job.total_files:
            self._store.update_album_job(identity, job.id, total_files=len(file_ids))

        # Membership materialization
        if not self._store.get_album_memberships(job.id):
            self._store.add_album_memberships(job.id, file_ids)
        self._store.remove_duplicate_memberships(job.id)

        # Resolution and delegation
        self._resolve_memberships(identity, credentials, job, token)

        # Join
        self._join_uploads(identity, credentials, job.id, token, timeout=self._upload_timeout)

        # Album materialization
        album_id, album_url = self._materialize_album(identity, credentials, job, mode, mapping, token)

        # Filtering and add-to-album with repair
        self._ensure_not_cancelled(identity, job.id)
        submitted = self._add_to_album(identity, credentials, job, album_id, token)

        # Completion
        self._store.upsert_folder_album_mapping(
            identity,
            job.source_folder_id,
            folder_name=job.folder_name,
            remote_album_id=album_id,
            remote_album_url=album_url,
            total_items_in_album=len(submitted),
            album_deleted=False,
        )
        uploaded = len(self._store.get_album_memberships(job.id, MEMBER_UPLOADED))
        self._advance_job(
            identity,
            job.id,
            (ALBUM_CREATING, ALBUM_UPDATING),
            status=ALBUM_COMPLETED,
            completed_at=datetime.utcnow(),
            remote_album_id=album_id,
            remote_album_url=album_url,
            uploaded_files=uploaded,
            error=None,
        )
        logger.info("Album job %s completed: %s item(s) in album %s", job.id, len(submitted), album_id)

    def _enumerate_folder(
        self,
        identity: str,
        credentials: GoogleCredentials,
        folder_id: str,
        token: CancellationToken,
    ) -> list[str]:
        """Recursively collect file ids under a folder; sub-folders are descended, not collected."""
        deadline = self._clock() + self._enumeration_timeout
        file_ids: list[str] = []
        seen_files: set[str] = set()
        visited: set[str] = set()
        pending_folders = [folder_id]

        while pending_folders:
            current = pending_folders.pop(0)
            if current in visited:
                continue
            visited.add(current)
            token.raise_if_cancelled()
            if self._clock() > deadline:
                raise JoinTimeoutError(f"Timeout enumerating folder {folder_id} after {len(file_ids)} file(s)")

            entries = self._call(identity, token, lambda: list(self._source.list_folder(credentials, current)))
            files = [entry for entry in entries if not entry.is_folder]
            self._store.cache_file_metadata(identity, files, parent_folder_id=current)
            for entry in entries:
                if entry.is_folder:
                    pending_folders.append(entry.id)
                elif entry.id not in seen_files:
                    seen_files.add(entry.id)
                    file_ids.append(entry.id)

        logger.info("Enumerated %s file(s) in %s folder(s) under %s", len(file_ids), len(visited), folder_id)
        return file_ids

    def _resolve_memberships(
        self,
        identity: str,
        credentials: GoogleCredentials,
        job,
        token: CancellationToken,
    ) -> None:
        needs_upload: list[str] = []
        rows_by_file: dict = {}
        requeued = 0
        uploaded = 0

        for row in self._store.get_album_memberships(job.id):
            if row.status == MEMBER_UPLOADED and row.remote_item_id:
                uploaded += 1
                continue
            rows_by_file[row.source_file_id] = row
            if row.status != MEMBER_PENDING:
                self._store.update_album_membership(
                    job.id, row.id, status=MEMBER_PENDING, error_message=None, remote_item_id=None
                )

            if self._store.is_file_ignored(identity, row.source_file_id):
                self._store.update_album_membership(job.id, row.id, status=MEMBER_FAILED, error_message=IGNORED_FILE)
                continue

            record = self._store.get_upload_record(identity, row.source_file_id)
            if record is not None and record.remote_item_id:
                self._store.update_album_membership(
                    job.id, row.id, status=MEMBER_UPLOADED, remote_item_id=record.remote_item_id
                )
                uploaded += 1
                continue

            item = self._store.find_upload_item(identity, row.source_file_id)
            if item is not None and item.status == UPLOAD_COMPLETED:
                # Completed without a result record: put it back in the queue.
                logger.info("Re-queueing orphaned upload item %s (%s)", item.id, row.source_file_id)
                requeued += self._store.requeue_upload_items(identity, [item.id], statuses=(UPLOAD_COMPLETED,))
                continue

            needs_upload.append(row.source_file_id)

        self._store.update_album_job(identity, job.id, uploaded_files=uploaded)
        logger.info(
            "Album job %s: %s already uploaded, %s to upload, %s re-queued",
            job.id,
            uploaded,
            len(needs_upload),
            requeued,
        )

        if needs_upload:
            token.raise_if_cancelled()
            result = self._uploads.enqueue(identity, credentials, needs_upload)
            for skipped in result.skipped:
                if skipped["reason"] in (ALREADY_QUEUED, ALREADY_UPLOADED):
                    continue
                row = rows_by_file.get(skipped["id"])
                if row is not None:
                    self._store.update_album_membership(
                        job.id, row.id, status=MEMBER_FAILED, error_message=skipped["reason"]
                    )

        if needs_upload or requeued:
            self._kick_uploads(identity, credentials)

    def _join_uploads(
        self,
        identity: str,
        credentials: GoogleCredentials,
        job_id: int,
        token: CancellationToken,
        *,
        timeout: float,
        stale_ids: frozenset = frozenset(),
    ) -> None:
        """Poll until no membership row is PENDING, settling rows from upload state."""
        deadline = self._clock() + timeout
        while True:
            token.raise_if_cancelled()
            self._ensure_not_cancelled(identity, job_id)

            remaining = 0
            for row in self._store.get_album_memberships(job_id, MEMBER_PENDING):
                if not self._settle_pending_row(identity, job_id, row, stale_ids):
                    remaining += 1

            uploaded = len(self._store.get_album_memberships(job_id, MEMBER_UPLOADED))
            self._store.update_album_job(identity, job_id, uploaded_files=uploaded)
            if remaining == 0:
                logger.info("All files settled for album job %s", job_id)
                return

            if not self._uploads.is_running(identity):
                stats = self._store.get_upload_queue_stats(identity)
                if stats.get("pending"):
                    logger.info("Upload run not active with %s pending item(s), restarting", stats["pending"])
                    self._kick_uploads(identity, credentials)

            if self._clock() >= deadline:
                raise JoinTimeoutError(f"Timeout waiting for {remaining} file(s) to be uploaded")
            logger.debug("Album job %s waiting on %s file(s)", job_id, remaining)
            if token.wait(self._poll_interval):
                raise OperationCancelled(STOPPED_BY_USER)

    def _settle_pending_row(self, identity: str, job_id: int, row, stale_ids: frozenset) -> bool:
        """Move a PENDING row to UPLOADED/FAILED if its upload has finished; True when settled."""
        record = self._store.get_upload_record(identity, row.source_file_id)
        if record is not None and record.remote_item_id and record.remote_item_id not in stale_ids:
            self._store.update_album_membership(
                job_id, row.id, status=MEMBER_UPLOADED, remote_item_id=record.remote_item_id
            )
            return True

        item = self._store.find_upload_item(identity, row.source_file_id)
        if item is None:
            self._store.update_album_membership(job_id, row.id, status=MEMBER_FAILED, error_message=NOT_QUEUED)
            return True
        if item.status == UPLOAD_FAILED:
            self._store.update_album_membership(
                job_id, row.id, status=MEMBER_FAILED, error_message=item.error or "Upload failed"
            )
            return True
        if item.status == UPLOAD_COMPLETED and item.remote_item_id and item.remote_item_id not in stale_ids:
            self._store.update_album_membership(
                job_id, row.id, status=MEMBER_UPLOADED, remote_item_id=item.remote_item_id
            )
            return True
        return False

    def _materialize_album(
        self,
        identity: str,
        credentials: GoogleCredentials,
        job,
        mode: str,
        mapping,
        token: CancellationToken,
    ) -> tuple[str, Optional[str]]:
        self._advance_job(
            identity,
            job.id,
            (ALBUM_UPLOADING,),
            status=ALBUM_CREATING if mode == MODE_CREATE else ALBUM_UPDATING,
        )

        if mode == MODE_UPDATE:
            album = self._call(identity, token, lambda: self._photos.get_album(credentials, mapping.remote_album_id))
            if album is not None:
                return mapping.remote_album_id, mapping.remote_album_url or album.url
            logger.warning(
                "Mapped album %s for folder %s is gone, creating a new one",
                mapping.remote_album_id,
                job.folder_name,
            )
            self._store.mark_album_deleted(identity, job.source_folder_id)
            self._advance_job(identity, job.id, (ALBUM_UPDATING,), mode=MODE_CREATE, status=ALBUM_CREATING)

        album = self._call(
            identity,
            token,
            lambda: self._photos.create_album(credentials, job.folder_name),
            max_retries=3,
        )
        return album.id, album.url

    def _collect_remote_ids(self, job_id: int) -> tuple[list[str], dict]:
        """Valid, de-duplicated remote ids of UPLOADED rows, in row order."""
        remote_ids: list[str] = []
        rows_by_remote_id: dict = {}
        for row in self._store.get_album_memberships(job_id, MEMBER_UPLOADED):
            remote_id = (row.remote_item_id or "").strip()
            if len(remote_id) < max(1, self._min_remote_id_length):
                logger.warning("Dropping invalid remote id %r for %s", row.remote_item_id, row.source_file_id)
                self._store.update_album_membership(
                    job_id, row.id, status=MEMBER_FAILED_ADD, error_message=INVALID_REMOTE_ID
                )
                continue
            if remote_id in rows_by_remote_id:
                continue
            rows_by_remote_id[remote_id] = row
            remote_ids.append(remote_id)
        return remote_ids, rows_by_remote_id

    def _add_to_album(
        self,
        identity: str,
        credentials: GoogleCredentials,
        job,
        album_id: str,
        token: CancellationToken,
    ) -> list[str]:
        """Add uploaded items to the album, repairing rejected ids; returns the ids that made it in."""
        submitted, rows_by_remote_id = self._collect_remote_ids(job.id)
        if not submitted:
            logger.warning("No media items to add to album %s for job %s", album_id, job.id)
            return []

        to_add = list(submitted)
        attempts = 0
        while to_add:
            batch = list(to_add)
            result = self._call(
                identity,
                token,
                lambda: self._photos.add_items_to_album(
                    credentials,
                    album_id,
                    batch,
                    batch_size=self._album_add_batch_size,
                ),
                max_retries=3,
            )
            invalid = [remote_id for remote_id in result.invalid_ids if remote_id in rows_by_remote_id]
            if not invalid:
                break

            if attempts >= self._repair_max_attempts:
                for remote_id in invalid:
                    row = rows_by_remote_id[remote_id]
                    self._store.update_album_membership(
                        job.id,
                        row.id,
                        status=MEMBER_FAILED_ADD,
                        error_message=f"Rejected by album after {attempts} repair attempt(s)",
                    )
                rejected = set(invalid)
                submitted = [remote_id for remote_id in submitted if remote_id not in rejected]
                logger.warning(
                    "Album %s is missing %s item(s) after %s repair attempt(s)",
                    album_id,
                    len(invalid),
                    attempts,
                )
                break

            attempts += 1
            logger.info(
                "Album %s rejected %s item(s), re-uploading (attempt %s/%s)",
                album_id,
                len(invalid),
                attempts,
                self._repair_max_attempts,
            )
            refreshed = self._repair_invalid_items(identity, credentials, job, invalid, rows_by_remote_id, token)
            rejected = set(invalid)
            submitted = [remote_id for remote_id in submitted if remote_id not in rejected]
            for remote_id in invalid:
                rows_by_remote_id.pop(remote_id, None)
            for remote_id, row in refreshed.items():
                if remote_id in rows_by_remote_id:
                    continue
                rows_by_remote_id[remote_id] = row
                submitted.append(remote_id)
            to_add = list(refreshed)

        return submitted

    def _repair_invalid_items(
        self,
        identity: str,
        credentials: GoogleCredentials,
        job,
        invalid_ids: list[str],
        rows_by_remote_id: dict,
        token: CancellationToken,
    ) -> dict:
        """Forget, re-upload and re-join the files behind rejected ids; returns new id -> row."""
        rows = [rows_by_remote_id[remote_id] for remote_id in invalid_ids]
        file_ids = [row.source_file_id for row in rows]
        self._store.delete_upload_records(identity, file_ids)
        for row in rows:
            self._store.update_album_membership(
                job.id, row.id, status=MEMBER_PENDING, remote_item_id=None, error_message=None
            )

        to_enqueue: list[str] = []
        for file_id in file_ids:
            item = self._store.find_upload_item(identity, file_id)
            if item is None:
                to_enqueue.append(file_id)
            elif item.status in (UPLOAD_COMPLETED, UPLOAD_FAILED):
                self._store.requeue_upload_items(identity, [item.id], statuses=(UPLOAD_COMPLETED, UPLOAD_FAILED))
        if to_enqueue:
            self._uploads.enqueue(identity, credentials, to_enqueue)
        self._kick_uploads(identity, credentials)

        self._join_uploads(
            identity,
            credentials,
            job.id,
            token,
            timeout=self._reupload_timeout,
            stale_ids=frozenset(invalid_ids),
        )

        row_ids = {row.id for row in rows}
        refreshed = {}
        for row in self._store.get_album_memberships(job.id, MEMBER_UPLOADED):
            if row.id not in row_ids:
                continue
            remote_id = (row.remote_item_id or "").strip()
            if len(remote_id) < max(1, self._min_remote_id_length):
                self._store.update_album_membership(
                    job.id, row.id, status=MEMBER_FAILED_ADD, error_message=INVALID_REMOTE_ID
                )
                continue
            refreshed[remote_id] = row
        return refreshed

    # Helpers

    def _call(self, identity: str, token: Optional[CancellationToken], operation: Callable, *, max_retries=None):
        """Run a remote call with retry; retries signal the shared pause."""

        def attempt():
            self._backoff.wait_while_paused(identity, token)
            if token is not None:
                token.raise_if_cancelled()
            return operation()

        state = self._runs.get(identity)
        tracking_id = state.tracking_id if state is not None else None
        limit = self._retry_policy.max_retries if max_retries is None else max_retries

        def on_retry(exc, attempt_number, delay):
            self._backoff.pause(identity, delay, reason=str(exc))
            self._progress.retry(tracking_id, f"Retrying after error: {exc}", attempt_number, limit)

        policy = replace(self._retry_policy, on_retry=on_retry, max_retries=limit)
        sleep = token.wait if token is not None else time.sleep
        return run_with_retry(attempt, policy, sleep=sleep)

    def _kick_uploads(self, identity: str, credentials: GoogleCredentials) -> None:
        if self._uploads.is_running(identity):
            return
        self._upload_starter(identity, credentials)

    def _start_uploads_in_background(self, identity: str, credentials: GoogleCredentials) -> None:
        Thread(
            target=self._run_uploads,
            args=(identity, credentials),
            name=f"album-uploads-{identity}",
            daemon=True,
        ).start()

    def _run_uploads(self, identity: str, credentials: GoogleCredentials) -> None:
        try:
            self._uploads.start(identity, credentials)
        except Exception:
            logger.exception("Background upload processing failed for %s", identity)
