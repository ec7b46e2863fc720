"""Upload queue orchestration: a bounded worker pool that drains pending upload items."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
import logging
from threading import Lock, Thread
from typing import Callable, Iterable, Optional

from photoferry.backoff import BackoffController
from photoferry.coordination import CancellationToken, RunRegistry, RunState
from photoferry.errors import IncompleteMetadataError, OperationCancelled
from photoferry.metadata import UPLOAD_PENDING
from photoferry.photos import NO_BATCH_RESULT, GooglePhotosClient, NewMediaItem
from photoferry.progress import ProgressReporter
from photoferry.rate import UploadRateTracker
from photoferry.retry import RetryPolicy, is_rate_limit_error, run_with_retry
from photoferry.settings import settings
from photoferry.storage import GoogleCredentials, GoogleDriveSource
from photoferry.store import EnqueueResult, JobStore, NewUploadItem


logger = logging.getLogger(__name__)

STOPPED_BY_USER = "Processing stopped by user"
INCOMPLETE_METADATA = "Incomplete metadata"
EMPTY_FILE_REASON = "Empty file (0 bytes)"
IGNORED_FILE = "File is on the ignore list"


@dataclass
class UploadRunResult:
    total: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: bool = False

    @property
    def processed(self) -> int:
        return self.completed + self.failed


@dataclass
class _StagedItem:
    item: object
    staging_token: str
    size: int


@dataclass
class _RunContext:
    """Shared state of one upload run; every mutable field is guarded by `lock`."""

    identity: str
    credentials: GoogleCredentials
    state: RunState
    items: list
    batch_size: int
    tracking_id: Optional[str] = None
    result: UploadRunResult = field(default_factory=UploadRunResult)
    lock: Lock = field(default_factory=Lock)
    next_index: int = 0
    batch: list = field(default_factory=list)

    @property
    def token(self) -> CancellationToken:
        return self.state.token

    def claim_next(self):
        with self.lock:
            if self.next_index >= len(self.items):
                return None
            item = self.items[self.next_index]
            self.next_index += 1
            return item

    def add_to_batch(self, staged: _StagedItem) -> Optional[list]:
        """Append and return a full batch snapshot when the size is reached."""
        with self.lock:
            self.batch.append(staged)
            if len(self.batch) < self.batch_size:
                return None
            snapshot, self.batch = self.batch, []
            return snapshot

    def drain_batch(self) -> list:
        with self.lock:
            snapshot, self.batch = self.batch, []
            return snapshot

    def record(self, success: bool) -> int:
        with self.lock:
            if success:
                self.result.completed += 1
            else:
                self.result.failed += 1
            return self.result.processed


class UploadOrchestrator:
    """Drains an identity's pending upload items with a bounded pool of worker threads.

    Each worker claims the next item (index counter plus a conditional
    pending->uploading transition), downloads it from the source, stages
    the bytes remotely and appends the staging token to a shared batch.
    Full batches are exchanged for remote media items in one call.
    """

    def __init__(
        self,
        store: JobStore,
        source: GoogleDriveSource,
        photos: GooglePhotosClient,
        *,
        backoff: Optional[BackoffController] = None,
        progress: Optional[ProgressReporter] = None,
        concurrency: Optional[int] = None,
        max_concurrency: Optional[int] = None,
        batch_size: Optional[int] = None,
        retry_policy: Optional[RetryPolicy] = None,
        transfer_max_retries: Optional[int] = None,
    ):
        self._store = store
        self._source = source
        self._photos = photos
        self._backoff = backoff or BackoffController()
        self._progress = progress or ProgressReporter()
        self._concurrency = concurrency or settings.queue_concurrency
        self._max_concurrency = max_concurrency or settings.queue_max_concurrency
        self._batch_size = batch_size or settings.effective_media_batch_size
        self._retry_policy = retry_policy or RetryPolicy.from_settings()
        self._transfer_max_retries = (
            settings.transfer_max_retries if transfer_max_retries is None else transfer_max_retries
        )
        self._runs = RunRegistry()
        self._rate_lock = Lock()
        self._rate_trackers: dict[str, UploadRateTracker] = {}

    @property
    def store(self) -> JobStore:
        return self._store

    def is_running(self, identity: str) -> bool:
        return self._runs.is_active(identity)

    # Enqueue

    def enqueue(self, identity: str, credentials: GoogleCredentials, file_ids: Iterable[str]) -> EnqueueResult:
        """Resolve metadata for each file and insert the valid ones as pending items."""
        result = EnqueueResult()
        new_items: list[NewUploadItem] = []
        for file_id in file_ids:
            if self._store.is_file_ignored(identity, file_id):
                result.skip(file_id, IGNORED_FILE)
                continue
            try:
                new_items.append(self._resolve_metadata(identity, credentials, file_id))
            except IncompleteMetadataError:
                logger.warning("Skipping %s for %s: incomplete metadata", file_id, identity)
                result.skip(file_id, INCOMPLETE_METADATA)
            except Exception as exc:
                logger.warning("Skipping %s for %s: %s", file_id, identity, exc)
                result.skip(file_id, str(exc) or exc.__class__.__name__)

        if new_items:
            result.merge(self._store.add_upload_items(identity, new_items))
        logger.info(
            "Enqueued %s file(s) for %s, skipped %s",
            len(result.added),
            identity,
            len(result.skipped),
        )
        return result

    def _resolve_metadata(self, identity: str, credentials: GoogleCredentials, file_id: str) -> NewUploadItem:
        cached = self._store.get_cached_file_metadata(identity, file_id)
        if cached is not None and cached.name and cached.content_type:
            return NewUploadItem(file_id, cached.name, cached.content_type, cached.size_bytes)

        entry = run_with_retry(
            lambda: self._source.get_file(credentials, file_id),
            replace(self._retry_policy, on_retry=None),
        )
        if not entry.name or not entry.mime_type:
            raise IncompleteMetadataError(f"Source file {file_id} has no name or content type")
        return NewUploadItem(file_id, entry.name, entry.mime_type, entry.size)

    # Run

    def start(self, identity: str, credentials: GoogleCredentials) -> Optional[UploadRunResult]:
        """Process every pending item for the identity; None if a run is already active."""
        state = self._runs.begin(identity)
        if state is None:
            logger.info("Upload processing already running for %s, skipping", identity)
            return None
        try:
            return self._run(identity, credentials, state)
        finally:
            self._runs.end(state)

    def _run(self, identity: str, credentials: GoogleCredentials, state: RunState) -> UploadRunResult:
        self._store.reset_stuck_uploading_items(identity)
        items = self._store.get_upload_items(identity, UPLOAD_PENDING)
        ctx = _RunContext(
            identity=identity,
            credentials=credentials,
            state=state,
            items=items,
            batch_size=self._batch_size,
        )
        ctx.result.total = len(items)
        if not items:
            logger.info("No pending uploads for %s", identity)
            return ctx.result

        ctx.tracking_id = self._progress.start(
            identity,
            "upload",
            "Processing Upload Queue",
            total=len(items),
        )
        worker_count = max(1, min(self._max_concurrency, self._concurrency, len(items)))
        logger.info(
            "Starting upload run for %s: %s item(s), %s worker(s), batch size %s",
            identity,
            len(items),
            worker_count,
            self._batch_size,
        )

        workers = [
            Thread(target=self._worker, args=(ctx,), name=f"upload-{identity}-{index}", daemon=True)
            for index in range(worker_count)
        ]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()

        self._flush(ctx, ctx.drain_batch())

        ctx.result.cancelled = state.stop_requested or state.token.cancelled
        if ctx.result.cancelled:
            self._progress.fail(identity, ctx.tracking_id, STOPPED_BY_USER)
        else:
            self._progress.complete(
                identity,
                ctx.tracking_id,
                {"completed": ctx.result.completed, "failed": ctx.result.failed},
            )
        logger.info(
            "Upload run finished for %s: %s completed, %s failed, cancelled=%s",
            identity,
            ctx.result.completed,
            ctx.result.failed,
            ctx.result.cancelled,
        )
        return ctx.result

    def _worker(self, ctx: _RunContext) -> None:
        while not ctx.token.cancelled:
            item = ctx.claim_next()
            if item is None:
                return
            self._backoff.wait_while_paused(ctx.identity, ctx.token)
            if ctx.token.cancelled:
                # Never claimed in the store, so the item stays pending.
                return
            try:
                self._process_item(ctx, item)
            except OperationCancelled:
                if self._store.revert_uploading_item(ctx.identity, item.id):
                    logger.info("Upload of %s interrupted, left pending", item.source_file_id)
                return
            except Exception as exc:
                logger.exception("Upload failed for %s (%s)", item.display_name, item.source_file_id)
                if self._store.finish_upload_item(ctx.identity, item.id, success=False, error=str(exc)):
                    self._report(ctx, success=False)

    def _process_item(self, ctx: _RunContext, item) -> None:
        identity = ctx.identity
        if item.size_bytes == 0:
            if not self._store.claim_upload_item(identity, item.id):
                return
            self._store.ignore_file(identity, item.source_file_id, EMPTY_FILE_REASON, display_name=item.display_name)
            self._store.finish_upload_item(identity, item.id, success=False, error=f"Skipped: {EMPTY_FILE_REASON}")
            logger.info("Skipped empty file %s (%s)", item.display_name, item.source_file_id)
            self._report(ctx, success=False)
            return

        if not self._store.claim_upload_item(identity, item.id):
            logger.info("Upload item %s was not pending, skipping", item.id)
            return

        data = self._transfer_with_retry(
            ctx,
            lambda: self._source.download_file(ctx.credentials, item.source_file_id, ctx.token),
        )
        ctx.token.raise_if_cancelled()
        staging_token = self._transfer_with_retry(
            ctx,
            lambda: self._photos.stage_bytes(ctx.credentials, data, item.display_name),
        )
        batch = ctx.add_to_batch(_StagedItem(item=item, staging_token=staging_token, size=len(data)))
        if batch:
            self._flush(ctx, batch)

    def _transfer_with_retry(self, ctx: _RunContext, operation: Callable):
        identity = ctx.identity

        def attempt():
            self._backoff.wait_while_paused(identity, ctx.token)
            ctx.token.raise_if_cancelled()
            return operation()

        def on_retry(exc, attempt_number, delay):
            self._backoff.pause(identity, delay, reason=str(exc))
            self._progress.retry(
                ctx.tracking_id, f"Retrying after error: {exc}", attempt_number, self._transfer_max_retries
            )

        policy = replace(self._retry_policy, max_retries=self._transfer_max_retries, on_retry=on_retry)
        return run_with_retry(attempt, policy, sleep=ctx.token.wait)

    def _flush(self, ctx: _RunContext, batch: list) -> None:
        if not batch:
            return
        identity = ctx.identity
        if ctx.token.cancelled:
            for staged in batch:
                self._store.revert_uploading_item(identity, staged.item.id)
            return

        def on_retry(exc, attempt_number, delay):
            self._backoff.pause(identity, delay, reason="Rate limited creating media items")
            self._progress.retry(
                ctx.tracking_id, "Rate limited creating media items", attempt_number, self._retry_policy.max_retries
            )

        policy = replace(self._retry_policy, should_retry=is_rate_limit_error, on_retry=on_retry)
        new_items = [NewMediaItem(staged.staging_token, staged.item.display_name) for staged in batch]
        logger.info("Creating %s media item(s) for %s", len(new_items), identity)
        try:
            results = run_with_retry(lambda: self._photos.create_items(ctx.credentials, new_items), policy)
        except Exception as exc:
            logger.error("Batch create of %s item(s) failed for %s: %s", len(batch), identity, exc)
            for staged in batch:
                if self._store.finish_upload_item(identity, staged.item.id, success=False, error=str(exc)):
                    self._report(ctx, success=False)
            return

        by_token = {result.staging_token: result for result in results}
        tracker = self._rate_tracker(identity)
        for staged in batch:
            item = staged.item
            result = by_token.get(staged.staging_token)
            try:
                if result is not None and result.success and result.remote_id:
                    self._store.record_upload(
                        identity,
                        item.source_file_id,
                        result.remote_id,
                        display_name=item.display_name,
                        content_type=item.content_type,
                        size_bytes=staged.size,
                    )
                    self._store.finish_upload_item(identity, item.id, success=True, remote_item_id=result.remote_id)
                    tracker.add(staged.size)
                    self._report(ctx, success=True)
                else:
                    error = (result.error if result is not None else None) or NO_BATCH_RESULT
                    logger.warning("Media item creation failed for %s: %s", item.display_name, error)
                    if self._store.finish_upload_item(identity, item.id, success=False, error=error):
                        self._report(ctx, success=False)
            except Exception as exc:
                logger.exception("Failed to record result for upload item %s", item.id)
                self._fail_unrecorded(ctx, item, exc)

    def _fail_unrecorded(self, ctx: _RunContext, item, exc: Exception) -> None:
        try:
            if self._store.finish_upload_item(
                ctx.identity, item.id, success=False, error=f"Failed to record result: {exc}"
            ):
                self._report(ctx, success=False)
        except Exception:
            logger.exception("Upload item %s left uploading until the next run", item.id)

    def _report(self, ctx: _RunContext, *, success: bool) -> None:
        processed = ctx.record(success)
        self._progress.update(ctx.tracking_id, processed, ctx.result.total)

    # Stop and stats

    def stop(self, identity: str) -> int:
        """Stop the identity's run; returns the number of in-flight items marked failed."""
        logger.info("Stop upload processing requested for %s", identity)
        state = self._runs.get(identity)
        if state is not None:
            state.stop_requested = True
            failed = self._store.fail_uploading_items(identity, STOPPED_BY_USER)
            state.token.cancel()
        else:
            failed = 0
            self._store.reset_stuck_uploading_items(identity)
        self._progress.fail_identity(identity, STOPPED_BY_USER)
        return failed

    def _rate_tracker(self, identity: str) -> UploadRateTracker:
        with self._rate_lock:
            tracker = self._rate_trackers.get(identity)
            if tracker is None:
                tracker = UploadRateTracker()
                self._rate_trackers[identity] = tracker
            return tracker

    def get_upload_stats(self, identity: str) -> dict:
        return {
            "queue": self._store.get_upload_queue_stats(identity),
            "rate": self._rate_tracker(identity).stats(),
            "is_processing": self.is_running(identity),
        }
