"""Remote media library client."""

from .client import (
    NO_BATCH_RESULT,
    AlbumAddResult,
    CreateItemResult,
    GooglePhotosClient,
    NewMediaItem,
    RemoteAlbum,
    chunked,
)

__all__ = [
    "NO_BATCH_RESULT",
    "AlbumAddResult",
    "CreateItemResult",
    "GooglePhotosClient",
    "NewMediaItem",
    "RemoteAlbum",
    "chunked",
]
