"""Photoferry CLI entry point with lazy command registration."""

from __future__ import annotations

import click

_COMMANDS_REGISTERED = False


def _register_commands_once() -> None:
    global _COMMANDS_REGISTERED
    if _COMMANDS_REGISTERED:
        return

    from .commands import (
        albums,
        database,
        queue,
    )

    cli.add_command(queue.enqueue_command, name="enqueue")
    cli.add_command(queue.enqueue_all_command, name="enqueue-all")
    cli.add_command(queue.process_queue_command, name="process-queue")
    cli.add_command(queue.queue_status_command, name="queue-status")
    cli.add_command(albums.add_album_command, name="add-album")
    cli.add_command(albums.process_albums_command, name="process-albums")
    cli.add_command(database.init_db_command, name="init-db")

    _COMMANDS_REGISTERED = True


class _LazyCLIGroup(click.Group):
    def list_commands(self, ctx):
        _register_commands_once()
        return super().list_commands(ctx)

    def get_command(self, ctx, cmd_name):
        _register_commands_once()
        return super().get_command(ctx, cmd_name)


@click.group(cls=_LazyCLIGroup)
def cli():
    """Photoferry CLI for queueing and running transfers."""
    pass


if __name__ == "__main__":
    cli()
