"""Upload queue commands."""

from __future__ import annotations

from typing import Optional

import click

from photoferry.cli.base import CliCommand, credential_options


@click.command(name="enqueue")
@click.option("--identity", required=True, help="Account namespace the items belong to")
@credential_options
@click.argument("file_ids", nargs=-1, required=True)
def enqueue_command(identity: str, access_token: Optional[str], refresh_token: Optional[str], file_ids: tuple):
    """Add source files to the upload queue."""
    cmd = EnqueueCommand(
        identity=identity,
        access_token=access_token,
        refresh_token=refresh_token,
        file_ids=list(file_ids),
    )
    cmd.run()


class EnqueueCommand(CliCommand):
    """Command to enqueue source files for upload."""

    def __init__(self, *, identity: str, access_token, refresh_token, file_ids: list[str]):
        super().__init__()
        self.identity = identity
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.file_ids = file_ids

    def run(self):
        credentials = self.load_credentials(self.access_token, self.refresh_token)
        self.setup_db()
        try:
            service = self.load_service()
            result = service.uploads.enqueue(self.identity, credentials, self.file_ids)
            click.echo(f"✓ Added {len(result.added)} file(s)")
            for skipped in result.skipped:
                click.echo(f"  - skipped {skipped['id']}: {skipped['reason']}")
        finally:
            self.cleanup_db()


@click.command(name="enqueue-all")
@click.option("--identity", required=True, help="Account namespace the items belong to")
@click.option("--folder-id", required=True, help="Root folder to queue recursively")
@click.option("--folder-name", default=None, help="Display name for progress reporting")
@credential_options
def enqueue_all_command(
    identity: str,
    folder_id: str,
    folder_name: Optional[str],
    access_token: Optional[str],
    refresh_token: Optional[str],
):
    """Add every file under a folder tree to the upload queue."""
    cmd = EnqueueAllCommand(
        identity=identity,
        folder_id=folder_id,
        folder_name=folder_name,
        access_token=access_token,
        refresh_token=refresh_token,
    )
    cmd.run()


class EnqueueAllCommand(CliCommand):
    """Command to enqueue a whole folder tree."""

    def __init__(self, *, identity: str, folder_id: str, folder_name, access_token, refresh_token):
        super().__init__()
        self.identity = identity
        self.folder_id = folder_id
        self.folder_name = folder_name
        self.access_token = access_token
        self.refresh_token = refresh_token

    def run(self):
        credentials = self.load_credentials(self.access_token, self.refresh_token)
        self.setup_db()
        try:
            service = self.load_service()
            result = service.albums.enqueue_all(self.identity, credentials, self.folder_id, self.folder_name)
            click.echo(f"✓ Added {len(result.added)} file(s) from {self.folder_name or self.folder_id}")
            click.echo(f"  skipped {len(result.skipped)}")
        finally:
            self.cleanup_db()


@click.command(name="process-queue")
@click.option("--identity", required=True, help="Account namespace to process")
@credential_options
def process_queue_command(identity: str, access_token: Optional[str], refresh_token: Optional[str]):
    """Upload every pending item, blocking until the run finishes."""
    cmd = ProcessQueueCommand(identity=identity, access_token=access_token, refresh_token=refresh_token)
    cmd.run()


class ProcessQueueCommand(CliCommand):
    """Command to drain the upload queue in the foreground."""

    def __init__(self, *, identity: str, access_token, refresh_token):
        super().__init__()
        self.identity = identity
        self.access_token = access_token
        self.refresh_token = refresh_token

    def run(self):
        credentials = self.load_credentials(self.access_token, self.refresh_token)
        self.setup_db()
        try:
            service = self.load_service()
            try:
                result = service.uploads.start(self.identity, credentials)
            except KeyboardInterrupt:
                service.uploads.stop(self.identity)
                raise click.Abort()
            if result is None:
                click.echo("Upload processing is already running")
                return
            click.echo(
                f"✓ Upload run complete: total={result.total} completed={result.completed} "
                f"failed={result.failed}"
            )
        finally:
            self.cleanup_db()


@click.command(name="queue-status")
@click.option("--identity", required=True, help="Account namespace to report on")
def queue_status_command(identity: str):
    """Show upload and album queue counts."""
    cmd = QueueStatusCommand(identity=identity)
    cmd.run()


class QueueStatusCommand(CliCommand):
    """Command to print per-status queue counts."""

    def __init__(self, *, identity: str):
        super().__init__()
        self.identity = identity

    def run(self):
        self.setup_db()
        try:
            service = self.load_service()
            uploads = service.store.get_upload_queue_stats(self.identity)
            albums = service.store.get_album_queue_stats(self.identity)
            click.echo(f"Upload queue ({self.identity}):")
            for status, count in uploads.items():
                click.echo(f"  {status:<10} {count}")
            click.echo("Album queue:")
            for status, count in albums.items():
                click.echo(f"  {status:<10} {count}")
        finally:
            self.cleanup_db()
