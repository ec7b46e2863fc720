"""Long-lived service object wiring the orchestrators to their collaborators."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from threading import Thread
from typing import Optional

from sqlalchemy.orm import sessionmaker

from photoferry.albums import AlbumOrchestrator
from photoferry.backoff import BackoffController
from photoferry.photos import GooglePhotosClient
from photoferry.progress import OperationStatusManager, ProgressReporter
from photoferry.settings import settings
from photoferry.storage import GoogleCredentials, GoogleDriveSource
from photoferry.store import JobStore, SqlJobStore
from photoferry.uploads import UploadOrchestrator


logger = logging.getLogger(__name__)


@dataclass
class TransferService:
    """One instance per process; coordinates every identity."""

    store: JobStore
    source: GoogleDriveSource
    photos: GooglePhotosClient
    backoff: BackoffController
    operations: OperationStatusManager
    uploads: UploadOrchestrator
    albums: AlbumOrchestrator

    def start_uploads_in_background(self, identity: str, credentials: GoogleCredentials) -> bool:
        """Kick off an upload run without waiting; False if one is already active."""
        if self.uploads.is_running(identity):
            return False
        self._spawn(f"uploads-{identity}", self.uploads.start, identity, credentials)
        return True

    def start_albums_in_background(self, identity: str, credentials: GoogleCredentials) -> bool:
        """Kick off album processing without waiting; False if it is already active."""
        if self.albums.is_running(identity):
            return False
        self._spawn(f"albums-{identity}", self.albums.start_processing, identity, credentials)
        return True

    def _spawn(self, name: str, target, identity: str, credentials: GoogleCredentials) -> None:
        def run():
            try:
                target(identity, credentials)
            except Exception:
                logger.exception("Background %s failed", name)

        Thread(target=run, name=name, daemon=True).start()


def build_service(
    session_factory: Optional[sessionmaker] = None,
    *,
    store: Optional[JobStore] = None,
    source: Optional[GoogleDriveSource] = None,
    photos: Optional[GooglePhotosClient] = None,
    operations: Optional[OperationStatusManager] = None,
) -> TransferService:
    """Build the service from settings, with optional collaborator overrides."""
    if store is None:
        if session_factory is None:
            from photoferry.database import SessionLocal

            session_factory = SessionLocal
        store = SqlJobStore(session_factory)

    source = source or GoogleDriveSource()
    photos = photos or GooglePhotosClient()
    operations = operations or OperationStatusManager()
    backoff = BackoffController()
    reporter = ProgressReporter(operations)

    uploads = UploadOrchestrator(store, source, photos, backoff=backoff, progress=reporter)
    albums = AlbumOrchestrator(store, source, photos, uploads, backoff=backoff, progress=reporter)

    logger.info("Transfer service ready: %s", settings.queue_config_audit())
    return TransferService(
        store=store,
        source=source,
        photos=photos,
        backoff=backoff,
        operations=operations,
        uploads=uploads,
        albums=albums,
    )
