"""Test configuration and fixtures."""

from threading import Lock

import pytest

from photoferry.database import build_engine, build_session_factory, init_db
from photoferry.errors import RemoteApiError
from photoferry.photos import AlbumAddResult, CreateItemResult, RemoteAlbum
from photoferry.progress import OperationStatusManager, ProgressReporter
from photoferry.retry import RetryPolicy
from photoferry.storage import FOLDER_MIME_TYPE, GoogleCredentials, SourceEntry
from photoferry.store import SqlJobStore


IDENTITY = "alice@example.com"


class FakeSource:
    """In-memory source file store: folders, file metadata and bytes."""

    def __init__(self):
        self.entries = {}
        self.children = {}
        self.data = {}
        self.download_errors = {}
        self.get_file_calls = []
        self.download_calls = []

    def add_folder(self, folder_id, name, parent_id=None):
        entry = SourceEntry(id=folder_id, name=name, mime_type=FOLDER_MIME_TYPE, parent_id=parent_id)
        self.entries[folder_id] = entry
        self.children.setdefault(folder_id, [])
        if parent_id is not None:
            self.children.setdefault(parent_id, []).append(folder_id)
        return entry

    def add_file(self, file_id, name, *, parent_id=None, data=b"jpeg-bytes", mime_type="image/jpeg"):
        entry = SourceEntry(id=file_id, name=name, mime_type=mime_type, size=len(data), parent_id=parent_id)
        self.entries[file_id] = entry
        self.data[file_id] = data
        if parent_id is not None:
            self.children.setdefault(parent_id, []).append(file_id)
        return entry

    def get_file(self, credentials, file_id):
        self.get_file_calls.append(file_id)
        entry = self.entries.get(file_id)
        if entry is None:
            raise RemoteApiError(f"File not found: {file_id}", status_code=404)
        return entry

    def list_folder(self, credentials, folder_id):
        for child_id in self.children.get(folder_id, []):
            yield self.entries[child_id]

    def download_file(self, credentials, file_id, cancel_token=None):
        self.download_calls.append(file_id)
        errors = self.download_errors.get(file_id)
        if errors:
            raise errors.pop(0)
        return self.data[file_id]


class FakePhotos:
    """In-memory remote library: staging, media items and albums."""

    def __init__(self):
        self._lock = Lock()
        self._counter = 0
        self.staged = {}
        self.media_items = {}
        self.albums = {}
        self.album_items = {}
        self.create_calls = 0
        self.fail_names = set()
        self.drop_names = set()
        self.reject_names_once = set()
        self.reject_names_always = set()
        self.list_albums_error = None

    def _next(self, prefix):
        self._counter += 1
        return f"{prefix}-{self._counter:04d}"

    def stage_bytes(self, credentials, data, display_name):
        with self._lock:
            token = self._next("stage")
            self.staged[token] = display_name
            return token

    def create_items(self, credentials, items):
        with self._lock:
            self.create_calls += 1
            results = []
            for item in items:
                if item.display_name in self.drop_names:
                    continue
                if item.display_name in self.fail_names:
                    results.append(CreateItemResult(item.staging_token, False, error="Invalid media"))
                    continue
                remote_id = self._next("media-item")
                self.media_items[remote_id] = item.display_name
                results.append(CreateItemResult(item.staging_token, True, remote_id=remote_id))
            return results

    def add_album(self, title, *, count=0):
        with self._lock:
            album_id = self._next("album")
            album = RemoteAlbum(
                id=album_id,
                title=title,
                url=f"https://photos.example.com/{album_id}",
                media_items_count=count,
            )
            self.albums[album_id] = album
            self.album_items[album_id] = []
            return album

    def list_albums(self, credentials):
        if self.list_albums_error is not None:
            raise self.list_albums_error
        return list(self.albums.values())

    def create_album(self, credentials, title):
        return self.add_album(title)

    def get_album(self, credentials, album_id):
        return self.albums.get(album_id)

    def add_items_to_album(self, credentials, album_id, remote_ids, *, batch_size=50):
        result = AlbumAddResult()
        with self._lock:
            for remote_id in remote_ids:
                name = self.media_items.get(remote_id)
                if name in self.reject_names_always or name in self.reject_names_once:
                    self.reject_names_once.discard(name)
                    result.invalid_ids.append(remote_id)
                    continue
                self.album_items[album_id].append(remote_id)
                result.added_count += 1
        return result


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite database with every queue table created."""
    engine = build_engine(f"sqlite:///{tmp_path / 'photoferry-test.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def store(session_factory):
    return SqlJobStore(session_factory)


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def photos():
    return FakePhotos()


@pytest.fixture
def credentials():
    return GoogleCredentials.from_bearer("test-access-token")


@pytest.fixture
def fast_retry():
    """Retry policy without delays."""
    return RetryPolicy(max_retries=3, initial_delay=0.0, max_delay=0.0)


@pytest.fixture
def operations():
    return OperationStatusManager()


@pytest.fixture
def reporter(operations):
    return ProgressReporter(operations)
