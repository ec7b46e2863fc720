"""Source file store and Google credentials."""

from .providers import (
    FOLDER_MIME_TYPE,
    GoogleCredentials,
    GoogleDriveSource,
    SourceEntry,
)

__all__ = [
    "FOLDER_MIME_TYPE",
    "GoogleCredentials",
    "GoogleDriveSource",
    "SourceEntry",
]
