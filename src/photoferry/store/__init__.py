"""Job store contract and SQLAlchemy implementation."""

from photoferry.store.base import EnqueueResult, JobStore, NewUploadItem
from photoferry.store.sql import ALREADY_QUEUED, ALREADY_UPLOADED, SqlJobStore

__all__ = [
    "ALREADY_QUEUED",
    "ALREADY_UPLOADED",
    "EnqueueResult",
    "JobStore",
    "NewUploadItem",
    "SqlJobStore",
]
