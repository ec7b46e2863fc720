"""Album queue commands."""

from __future__ import annotations

from typing import Optional

import click

from photoferry.cli.base import CliCommand, credential_options
from photoferry.errors import DuplicateJobError


@click.command(name="add-album")
@click.option("--identity", required=True, help="Account namespace the job belongs to")
@click.option("--folder-id", required=True, help="Source folder to mirror as an album")
@click.option("--folder-name", required=True, help="Album title (the folder's name)")
def add_album_command(identity: str, folder_id: str, folder_name: str):
    """Queue a folder for album creation."""
    cmd = AddAlbumCommand(identity=identity, folder_id=folder_id, folder_name=folder_name)
    cmd.run()


class AddAlbumCommand(CliCommand):
    """Command to queue one folder as an album job."""

    def __init__(self, *, identity: str, folder_id: str, folder_name: str):
        super().__init__()
        self.identity = identity
        self.folder_id = folder_id
        self.folder_name = folder_name

    def run(self):
        self.setup_db()
        try:
            service = self.load_service()
            try:
                job = service.albums.enqueue(self.identity, self.folder_id, self.folder_name)
            except DuplicateJobError as exc:
                raise click.ClickException(str(exc))
            click.echo(f"✓ Queued album job {job.id} for {self.folder_name}")
        finally:
            self.cleanup_db()


@click.command(name="process-albums")
@click.option("--identity", required=True, help="Account namespace to process")
@credential_options
def process_albums_command(identity: str, access_token: Optional[str], refresh_token: Optional[str]):
    """Process every pending album job, blocking until done."""
    cmd = ProcessAlbumsCommand(identity=identity, access_token=access_token, refresh_token=refresh_token)
    cmd.run()


class ProcessAlbumsCommand(CliCommand):
    """Command to process album jobs in the foreground."""

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
                result = service.albums.start_processing(self.identity, credentials)
            except KeyboardInterrupt:
                service.albums.stop_processing(self.identity)
                service.uploads.stop(self.identity)
                raise click.Abort()
            if result is None:
                click.echo("Album processing is already running")
                return
            click.echo(
                f"✓ Album run complete: total={result.total} completed={result.completed} "
                f"failed={result.failed}"
            )
            for job in service.store.get_album_jobs(self.identity):
                if job.error:
                    click.echo(f"  - {job.folder_name}: {job.status} ({job.error})")
        finally:
            self.cleanup_db()
