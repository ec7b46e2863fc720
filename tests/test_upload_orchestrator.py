"""Upload queue orchestration against in-memory source and remote fakes."""

from threading import Event, Thread
import time

import pytest

from photoferry.backoff import BackoffController
from photoferry.errors import RemoteApiError
from photoferry.metadata import UPLOAD_COMPLETED, UPLOAD_FAILED, UPLOAD_PENDING, UPLOAD_UPLOADING
from photoferry.photos import NO_BATCH_RESULT
from photoferry.progress import STATUS_COMPLETED, STATUS_FAILED
from photoferry.retry import RetryPolicy
from photoferry.storage import SourceEntry
from photoferry.uploads import (
    EMPTY_FILE_REASON,
    IGNORED_FILE,
    INCOMPLETE_METADATA,
    STOPPED_BY_USER,
    UploadOrchestrator,
)

from conftest import IDENTITY


@pytest.fixture
def orchestrator(store, source, photos, reporter, fast_retry):
    return UploadOrchestrator(
        store,
        source,
        photos,
        progress=reporter,
        concurrency=1,
        max_concurrency=1,
        batch_size=2,
        retry_policy=fast_retry,
        transfer_max_retries=2,
    )


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class TestEnqueue:
    def test_enqueue_resolves_metadata_from_source(self, orchestrator, source, store, credentials):
        source.add_file("file-1", "a.jpg")
        source.add_file("file-2", "b.mov", mime_type="video/quicktime", data=b"movie")

        result = orchestrator.enqueue(IDENTITY, credentials, ["file-1", "file-2"])

        assert result.added == ["file-1", "file-2"]
        assert result.skipped == []
        items = store.get_upload_items(IDENTITY, UPLOAD_PENDING)
        assert [(item.display_name, item.content_type, item.size_bytes) for item in items] == [
            ("a.jpg", "image/jpeg", 10),
            ("b.mov", "video/quicktime", 5),
        ]

    def test_enqueue_prefers_cached_metadata(self, orchestrator, source, store, credentials):
        store.cache_file_metadata(
            IDENTITY,
            [SourceEntry(id="file-1", name="cached.jpg", mime_type="image/jpeg", size=42)],
        )

        result = orchestrator.enqueue(IDENTITY, credentials, ["file-1"])

        assert result.added == ["file-1"]
        assert source.get_file_calls == []
        assert store.find_upload_item(IDENTITY, "file-1").display_name == "cached.jpg"

    def test_enqueue_skips_incomplete_and_missing_files(self, orchestrator, source, credentials):
        source.entries["file-1"] = SourceEntry(id="file-1", name=None, mime_type="image/jpeg", size=1)

        result = orchestrator.enqueue(IDENTITY, credentials, ["file-1", "missing"])

        assert result.added == []
        reasons = {skipped["id"]: skipped["reason"] for skipped in result.skipped}
        assert reasons["file-1"] == INCOMPLETE_METADATA
        assert "File not found" in reasons["missing"]

    def test_enqueue_twice_reports_already_queued(self, orchestrator, source, credentials):
        source.add_file("file-1", "a.jpg")
        orchestrator.enqueue(IDENTITY, credentials, ["file-1"])

        result = orchestrator.enqueue(IDENTITY, credentials, ["file-1"])

        assert result.added == []
        assert result.skipped == [{"id": "file-1", "reason": "Already in queue"}]

    def test_enqueue_skips_ignored_files(self, orchestrator, source, store, credentials):
        source.add_file("file-1", "a.jpg")
        source.add_file("file-2", "b.jpg")
        store.ignore_file(IDENTITY, "file-1", "Ignored by user")

        result = orchestrator.enqueue(IDENTITY, credentials, ["file-1", "file-2"])

        assert result.added == ["file-2"]
        assert result.skipped == [{"id": "file-1", "reason": IGNORED_FILE}]
        assert store.find_upload_item(IDENTITY, "file-1") is None


class TestRun:
    def test_start_uploads_every_pending_item(self, orchestrator, source, photos, store, credentials, operations):
        for index in range(3):
            source.add_file(f"file-{index}", f"photo-{index}.jpg")
        orchestrator.enqueue(IDENTITY, credentials, ["file-0", "file-1", "file-2"])

        result = orchestrator.start(IDENTITY, credentials)

        assert (result.total, result.completed, result.failed, result.cancelled) == (3, 3, 0, False)
        items = store.get_upload_items(IDENTITY)
        assert all(item.status == UPLOAD_COMPLETED for item in items)
        for item in items:
            record = store.get_upload_record(IDENTITY, item.source_file_id)
            assert record.remote_item_id == item.remote_item_id
            assert photos.media_items[record.remote_item_id] == item.display_name
        # Batch size 2: one full batch plus the final partial flush.
        assert photos.create_calls == 2

        ops = operations.list_operations(identity=IDENTITY)
        assert len(ops) == 1
        assert ops[0].status == STATUS_COMPLETED
        assert ops[0].current == 3

        stats = orchestrator.get_upload_stats(IDENTITY)
        assert stats["queue"]["completed"] == 3
        assert stats["rate"]["total_uploaded_count"] == 3
        assert stats["is_processing"] is False

    def test_start_with_empty_queue(self, orchestrator, credentials, operations):
        result = orchestrator.start(IDENTITY, credentials)

        assert result.total == 0
        assert operations.list_operations(identity=IDENTITY) == []

    def test_parallel_workers_upload_everything(self, store, source, photos, fast_retry, credentials):
        orchestrator = UploadOrchestrator(
            store,
            source,
            photos,
            concurrency=4,
            max_concurrency=3,
            batch_size=3,
            retry_policy=fast_retry,
        )
        file_ids = [f"file-{index}" for index in range(10)]
        for file_id in file_ids:
            source.add_file(file_id, f"{file_id}.jpg")
        orchestrator.enqueue(IDENTITY, credentials, file_ids)

        result = orchestrator.start(IDENTITY, credentials)

        assert result.completed == 10
        assert sorted(source.download_calls) == sorted(file_ids)
        assert len(photos.media_items) == 10

    def test_empty_file_is_ignored(self, orchestrator, source, photos, store, credentials):
        source.add_file("file-1", "empty.jpg", data=b"")
        orchestrator.enqueue(IDENTITY, credentials, ["file-1"])

        result = orchestrator.start(IDENTITY, credentials)

        assert result.failed == 1
        item = store.find_upload_item(IDENTITY, "file-1")
        assert item.status == UPLOAD_FAILED
        assert item.error == f"Skipped: {EMPTY_FILE_REASON}"
        assert store.is_file_ignored(IDENTITY, "file-1")
        assert source.download_calls == []
        assert photos.create_calls == 0

    def test_transient_download_error_is_retried(self, orchestrator, source, store, credentials, operations):
        source.add_file("file-1", "a.jpg")
        source.download_errors["file-1"] = [RemoteApiError("unavailable", status_code=503)]
        orchestrator.enqueue(IDENTITY, credentials, ["file-1"])

        result = orchestrator.start(IDENTITY, credentials)

        assert result.completed == 1
        assert source.download_calls == ["file-1", "file-1"]
        assert store.find_upload_item(IDENTITY, "file-1").status == UPLOAD_COMPLETED
        op = operations.list_operations(identity=IDENTITY)[0]
        assert op.retry_count == 1
        assert op.max_retries == 2
        assert op.status == STATUS_COMPLETED

    def test_permanent_download_error_fails_item(self, orchestrator, source, store, credentials):
        source.add_file("file-1", "a.jpg")
        source.add_file("file-2", "b.jpg")
        source.download_errors["file-1"] = [RemoteApiError("Google Drive API error 404", status_code=404)]
        orchestrator.enqueue(IDENTITY, credentials, ["file-1", "file-2"])

        result = orchestrator.start(IDENTITY, credentials)

        assert (result.completed, result.failed) == (1, 1)
        failed = store.find_upload_item(IDENTITY, "file-1")
        assert failed.status == UPLOAD_FAILED
        assert "404" in failed.error
        assert store.get_upload_record(IDENTITY, "file-1") is None

    def test_missing_and_failed_batch_results(self, orchestrator, source, photos, store, credentials):
        source.add_file("file-1", "dropped.jpg")
        source.add_file("file-2", "rejected.jpg")
        photos.drop_names.add("dropped.jpg")
        photos.fail_names.add("rejected.jpg")
        orchestrator.enqueue(IDENTITY, credentials, ["file-1", "file-2"])

        result = orchestrator.start(IDENTITY, credentials)

        assert result.failed == 2
        assert store.find_upload_item(IDENTITY, "file-1").error == NO_BATCH_RESULT
        assert store.find_upload_item(IDENTITY, "file-2").error == "Invalid media"

    def test_batch_create_failure_fails_whole_batch(self, orchestrator, source, photos, store, credentials):
        source.add_file("file-1", "a.jpg")
        source.add_file("file-2", "b.jpg")
        orchestrator.enqueue(IDENTITY, credentials, ["file-1", "file-2"])

        def broken_create(credentials, items):
            raise RemoteApiError("Google Photos API error 500", status_code=500)

        photos.create_items = broken_create

        result = orchestrator.start(IDENTITY, credentials)

        assert result.failed == 2
        for file_id in ("file-1", "file-2"):
            item = store.find_upload_item(IDENTITY, file_id)
            assert item.status == UPLOAD_FAILED
            assert "500" in item.error

    def test_stuck_items_are_reset_before_a_run(self, orchestrator, source, store, credentials):
        source.add_file("file-1", "a.jpg")
        orchestrator.enqueue(IDENTITY, credentials, ["file-1"])
        item = store.find_upload_item(IDENTITY, "file-1")
        store.claim_upload_item(IDENTITY, item.id)

        result = orchestrator.start(IDENTITY, credentials)

        assert result.completed == 1


class BlockingSource:
    """Wraps a source so downloads wait until released."""

    def __init__(self, inner):
        self.inner = inner
        self.release = Event()

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def download_file(self, credentials, file_id, cancel_token=None):
        self.release.wait(5)
        return self.inner.download_file(credentials, file_id, cancel_token)


def test_stop_fails_in_flight_items_and_rejects_reentry(store, source, photos, reporter, operations, fast_retry, credentials):
    blocking = BlockingSource(source)
    orchestrator = UploadOrchestrator(
        store,
        blocking,
        photos,
        progress=reporter,
        concurrency=1,
        max_concurrency=1,
        retry_policy=fast_retry,
    )
    source.add_file("file-1", "a.jpg")
    source.add_file("file-2", "b.jpg")
    orchestrator.enqueue(IDENTITY, credentials, ["file-1", "file-2"])

    results = []
    runner = Thread(target=lambda: results.append(orchestrator.start(IDENTITY, credentials)))
    runner.start()
    assert _wait_for(lambda: store.get_upload_queue_stats(IDENTITY)[UPLOAD_UPLOADING] == 1)

    assert orchestrator.is_running(IDENTITY)
    assert orchestrator.start(IDENTITY, credentials) is None

    assert orchestrator.stop(IDENTITY) == 1
    blocking.release.set()
    runner.join(5)

    result = results[0]
    assert result.cancelled is True
    assert result.completed == 0
    first = store.find_upload_item(IDENTITY, "file-1")
    assert first.status == UPLOAD_FAILED
    assert first.error == STOPPED_BY_USER
    assert store.find_upload_item(IDENTITY, "file-2").status == UPLOAD_PENDING
    assert photos.create_calls == 0
    assert not orchestrator.is_running(IDENTITY)
    assert operations.list_operations(identity=IDENTITY)[0].status == STATUS_FAILED


def test_stop_without_active_run_resets_stuck_items(orchestrator, source, store, credentials):
    source.add_file("file-1", "a.jpg")
    orchestrator.enqueue(IDENTITY, credentials, ["file-1"])
    item = store.find_upload_item(IDENTITY, "file-1")
    store.claim_upload_item(IDENTITY, item.id)

    assert orchestrator.stop(IDENTITY) == 0

    assert store.get_upload_item(IDENTITY, item.id).status == UPLOAD_PENDING


class RecordingBackoff(BackoffController):
    """Real backoff controller that records every pause it is asked for."""

    def __init__(self):
        super().__init__()
        self.pauses = []
        self.paused = Event()

    def pause(self, identity, seconds, reason=None):
        self.pauses.append((identity, time.monotonic(), seconds))
        super().pause(identity, seconds, reason)
        self.paused.set()


class TimedSource:
    """Wraps a source, timestamping each download; `hold` files wait for the first pause."""

    def __init__(self, inner, backoff, hold=()):
        self.inner = inner
        self.backoff = backoff
        self.hold = set(hold)
        self.starts = []

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def download_file(self, credentials, file_id, cancel_token=None):
        self.starts.append((file_id, time.monotonic()))
        if file_id in self.hold:
            self.backoff.paused.wait(5)
        return self.inner.download_file(credentials, file_id, cancel_token)


def test_rate_limit_in_one_worker_holds_back_the_others(store, source, photos, credentials):
    backoff = RecordingBackoff()
    timed = TimedSource(source, backoff, hold={"file-2"})
    orchestrator = UploadOrchestrator(
        store,
        timed,
        photos,
        backoff=backoff,
        concurrency=2,
        max_concurrency=2,
        batch_size=10,
        retry_policy=RetryPolicy(max_retries=3, initial_delay=0.2, max_delay=0.2),
        transfer_max_retries=2,
    )
    for file_id in ("file-1", "file-2", "file-3"):
        source.add_file(file_id, f"{file_id}.jpg")
    source.download_errors["file-1"] = [RemoteApiError("Too many requests", status_code=429)]
    orchestrator.enqueue(IDENTITY, credentials, ["file-1", "file-2", "file-3"])

    result = orchestrator.start(IDENTITY, credentials)

    assert result.completed == 3
    assert len(backoff.pauses) == 1
    identity, paused_at, seconds = backoff.pauses[0]
    assert identity == IDENTITY
    assert seconds >= 0.2
    resume_at = paused_at + seconds

    starts = {}
    for file_id, started in timed.starts:
        starts.setdefault(file_id, []).append(started)
    # The retried file and the item queued behind the busy workers both wait out the pause.
    assert len(starts["file-1"]) == 2
    assert starts["file-1"][1] >= resume_at
    assert len(starts["file-3"]) == 1
    assert starts["file-3"][0] >= resume_at


class AbortingSource:
    """Wraps a source so a download trips the run's cancellation token mid-transfer."""

    def __init__(self, inner):
        self.inner = inner

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def download_file(self, credentials, file_id, cancel_token=None):
        self.inner.download_calls.append(file_id)
        cancel_token.cancel()
        cancel_token.raise_if_cancelled("Download interrupted")


def test_cancellation_during_transfer_leaves_item_pending(store, source, photos, reporter, fast_retry, credentials):
    orchestrator = UploadOrchestrator(
        store,
        AbortingSource(source),
        photos,
        progress=reporter,
        concurrency=1,
        max_concurrency=1,
        retry_policy=fast_retry,
    )
    source.add_file("file-1", "a.jpg")
    source.add_file("file-2", "b.jpg")
    orchestrator.enqueue(IDENTITY, credentials, ["file-1", "file-2"])

    result = orchestrator.start(IDENTITY, credentials)

    assert result.cancelled is True
    assert (result.completed, result.failed) == (0, 0)
    assert source.download_calls == ["file-1"]
    interrupted = store.find_upload_item(IDENTITY, "file-1")
    assert interrupted.status == UPLOAD_PENDING
    assert interrupted.error is None
    assert store.find_upload_item(IDENTITY, "file-2").status == UPLOAD_PENDING
    assert store.get_upload_record(IDENTITY, "file-1") is None
    assert photos.create_calls == 0
    assert not orchestrator.is_running(IDENTITY)


def test_result_that_cannot_be_recorded_fails_the_item(orchestrator, source, store, credentials, monkeypatch):
    source.add_file("file-1", "a.jpg")
    source.add_file("file-2", "b.jpg")
    orchestrator.enqueue(IDENTITY, credentials, ["file-1", "file-2"])
    record_upload = store.record_upload

    def flaky_record(identity, source_file_id, remote_item_id, **kwargs):
        if source_file_id == "file-1":
            raise RuntimeError("disk full")
        return record_upload(identity, source_file_id, remote_item_id, **kwargs)

    monkeypatch.setattr(store, "record_upload", flaky_record)

    result = orchestrator.start(IDENTITY, credentials)

    assert (result.completed, result.failed) == (1, 1)
    unrecorded = store.find_upload_item(IDENTITY, "file-1")
    assert unrecorded.status == UPLOAD_FAILED
    assert unrecorded.error == "Failed to record result: disk full"
    assert store.get_upload_record(IDENTITY, "file-1") is None
    assert store.find_upload_item(IDENTITY, "file-2").status == UPLOAD_COMPLETED
    assert store.get_upload_queue_stats(IDENTITY)[UPLOAD_UPLOADING] == 0
