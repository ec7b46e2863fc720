"""Database setup command."""

import click

from photoferry.cli.base import CliCommand


@click.command(name="init-db")
def init_db_command():
    """Create the queue tables if they do not exist."""
    cmd = InitDbCommand()
    cmd.run()


class InitDbCommand(CliCommand):
    """Command to create the schema."""

    def run(self):
        self.setup_db()
        try:
            click.echo(f"✓ Database ready: {self.engine.url.render_as_string(hide_password=True)}")
        finally:
            self.cleanup_db()
