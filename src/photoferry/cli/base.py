"""Base command class for shared CLI setup/teardown."""

import logging
from typing import Optional

import click

from photoferry.database import build_engine, build_session_factory, init_db
from photoferry.service import TransferService, build_service
from photoferry.settings import settings
from photoferry.storage import GoogleCredentials


class CliCommand:
    """Base class for all CLI commands with shared setup/teardown."""

    def __init__(self):
        self.engine = None
        self.Session = None
        self.service: Optional[TransferService] = None

    def setup_db(self):
        """Initialize database connection and make sure the tables exist."""
        logging.basicConfig(
            level=settings.log_level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        self.engine = build_engine()
        self.Session = build_session_factory(self.engine)
        init_db(self.engine)

    def cleanup_db(self):
        """Close database connection."""
        if self.engine is not None:
            self.engine.dispose()

    def load_service(self) -> TransferService:
        if self.Session is None:
            raise click.ClickException("Database not initialized")
        self.service = build_service(self.Session)
        return self.service

    @staticmethod
    def load_credentials(access_token: Optional[str], refresh_token: Optional[str]) -> GoogleCredentials:
        """Build credentials from CLI options (or their environment variables)."""
        if not access_token and not refresh_token:
            raise click.ClickException("Provide --access-token or --refresh-token")
        if refresh_token and not (settings.google_client_id and settings.google_client_secret):
            raise click.ClickException("GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET are required with --refresh-token")
        return GoogleCredentials(access_token=access_token, refresh_token=refresh_token)

    def run(self):
        """Execute command - override in subclasses."""
        raise NotImplementedError

    def __enter__(self):
        """Context manager entry."""
        self.setup_db()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.cleanup_db()


def credential_options(func):
    """Shared --access-token/--refresh-token options."""
    func = click.option(
        "--refresh-token",
        envvar="PHOTOFERRY_REFRESH_TOKEN",
        default=None,
        help="Google OAuth refresh token (uses GOOGLE_CLIENT_ID/GOOGLE_CLIENT_SECRET)",
    )(func)
    func = click.option(
        "--access-token",
        envvar="PHOTOFERRY_ACCESS_TOKEN",
        default=None,
        help="Google OAuth access token",
    )(func)
    return func
