"""CLI commands package."""

from . import (
    albums,
    database,
    queue,
)

__all__ = [
    'albums',
    'database',
    'queue',
]
