"""Job store contract used by the upload and album orchestrators."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional, Sequence


@dataclass
class EnqueueResult:
    """Outcome of an enqueue call: ids added and ids skipped with a reason."""

    added: list[str] = field(default_factory=list)
    skipped: list[Dict[str, str]] = field(default_factory=list)

    def skip(self, file_id: str, reason: str) -> None:
        self.skipped.append({"id": file_id, "reason": reason})

    def merge(self, other: "EnqueueResult") -> "EnqueueResult":
        self.added.extend(other.added)
        self.skipped.extend(other.skipped)
        return self

    def as_dict(self) -> Dict[str, Any]:
        return {"added": list(self.added), "skipped": [dict(item) for item in self.skipped]}


@dataclass
class NewUploadItem:
    source_file_id: str
    display_name: str
    content_type: str
    size_bytes: Optional[int] = None


class JobStore(ABC):
    """Persistent owner of upload items, album jobs, memberships and mappings.

    All state transitions are conditional and scoped to (identity, id); a
    transition method returns False when the row was not in the expected
    state.
    """

    # Upload items

    @abstractmethod
    def add_upload_items(self, identity: str, items: Sequence[NewUploadItem]) -> EnqueueResult:
        """Insert items, skipping ids already live-queued ("Already in queue") or transferred ("Already uploaded")."""

    @abstractmethod
    def get_upload_items(self, identity: str, status: Optional[str] = None) -> list:
        """Items for the identity, oldest first, optionally filtered by status."""

    @abstractmethod
    def get_upload_item(self, identity: str, item_id: int):
        """One item or None."""

    @abstractmethod
    def find_upload_item(self, identity: str, source_file_id: str):
        """Latest item for a source file, preferring a live (non-failed) one."""

    @abstractmethod
    def update_upload_item(self, identity: str, item_id: int, **fields) -> bool:
        """Unconditional partial update."""

    @abstractmethod
    def delete_upload_item(self, identity: str, item_id: int) -> bool:
        """Delete one item."""

    @abstractmethod
    def claim_upload_item(self, identity: str, item_id: int) -> bool:
        """pending -> uploading."""

    @abstractmethod
    def finish_upload_item(
        self,
        identity: str,
        item_id: int,
        *,
        success: bool,
        remote_item_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> bool:
        """uploading -> completed | failed."""

    @abstractmethod
    def revert_uploading_item(self, identity: str, item_id: int) -> bool:
        """uploading -> pending, used when a run is cancelled mid-transfer."""

    @abstractmethod
    def reset_stuck_uploading_items(self, identity: str) -> int:
        """Every uploading item -> pending (crash recovery)."""

    @abstractmethod
    def fail_uploading_items(self, identity: str, error: str) -> int:
        """Every uploading item -> failed with `error`."""

    @abstractmethod
    def requeue_upload_items(
        self,
        identity: str,
        item_ids: Optional[Iterable[int]] = None,
        *,
        statuses: Sequence[str] = ("failed",),
    ) -> int:
        """Explicit reset of terminal items back to pending."""

    @abstractmethod
    def get_upload_queue_stats(self, identity: str) -> Dict[str, int]:
        """Per-status counts plus a total."""

    @abstractmethod
    def clear_completed_upload_items(self, identity: str) -> int:
        """Delete completed items."""

    # Upload records (known-transferred files)

    @abstractmethod
    def record_upload(
        self,
        identity: str,
        source_file_id: str,
        remote_item_id: str,
        *,
        display_name: Optional[str] = None,
        content_type: Optional[str] = None,
        size_bytes: Optional[int] = None,
    ):
        """Insert or replace the transfer record for a source file."""

    @abstractmethod
    def get_upload_record(self, identity: str, source_file_id: str):
        """The transfer record or None."""

    @abstractmethod
    def delete_upload_records(self, identity: str, source_file_ids: Iterable[str]) -> int:
        """Forget transfer records so the files upload again."""

    # Ignore list and source metadata cache

    @abstractmethod
    def is_file_ignored(self, identity: str, source_file_id: str) -> bool:
        """Whether the file is on the ignore list."""

    @abstractmethod
    def ignore_file(self, identity: str, source_file_id: str, reason: str, *, display_name: Optional[str] = None) -> None:
        """Add the file to the ignore list."""

    @abstractmethod
    def unignore_file(self, identity: str, source_file_id: str) -> bool:
        """Remove the file from the ignore list."""

    @abstractmethod
    def cache_file_metadata(self, identity: str, entries: Iterable[Any], *, parent_folder_id: Optional[str] = None) -> int:
        """Upsert source metadata for enumerated entries."""

    @abstractmethod
    def get_cached_file_metadata(self, identity: str, source_file_id: str):
        """Cached metadata row or None."""

    # Album jobs

    @abstractmethod
    def add_album_job(self, identity: str, source_folder_id: str, folder_name: str):
        """Insert a PENDING job and return it."""

    @abstractmethod
    def find_live_album_job(self, identity: str, source_folder_id: str):
        """A PENDING or in-progress job for the folder, or None."""

    @abstractmethod
    def get_album_jobs(self, identity: str, status: Optional[str] = None) -> list:
        """Jobs for the identity, oldest first, optionally filtered by status."""

    @abstractmethod
    def get_album_job(self, identity: str, job_id: int):
        """One job or None."""

    @abstractmethod
    def update_album_job(self, identity: str, job_id: int, **fields) -> bool:
        """Unconditional partial update for counters and bookkeeping fields."""

    @abstractmethod
    def transition_album_job(
        self, identity: str, job_id: int, from_statuses: Sequence[str], **fields
    ) -> bool:
        """Apply `fields` only while the job is in one of `from_statuses`."""

    @abstractmethod
    def delete_album_job(self, identity: str, job_id: int) -> bool:
        """Delete a job and its memberships."""

    @abstractmethod
    def requeue_album_jobs(self, identity: str, job_ids: Optional[Iterable[int]] = None) -> int:
        """FAILED/CANCELLED jobs -> PENDING."""

    @abstractmethod
    def get_album_queue_stats(self, identity: str) -> Dict[str, int]:
        """Per-status counts plus a total."""

    # Album memberships

    @abstractmethod
    def add_album_memberships(self, job_id: int, source_file_ids: Iterable[str]) -> int:
        """Insert one PENDING row per file id."""

    @abstractmethod
    def get_album_memberships(self, job_id: int, status: Optional[str] = None) -> list:
        """Rows for the job in insertion order."""

    @abstractmethod
    def update_album_membership(self, job_id: int, membership_id: int, **fields) -> bool:
        """Partial update."""

    @abstractmethod
    def remove_duplicate_memberships(self, job_id: int) -> int:
        """Keep one row per (job, file); return the number removed."""

    @abstractmethod
    def fail_pending_memberships(self, job_id: int, error: str) -> int:
        """Every PENDING row -> FAILED."""

    # Folder to album mappings

    @abstractmethod
    def upsert_folder_album_mapping(
        self,
        identity: str,
        source_folder_id: str,
        *,
        folder_name: str,
        remote_album_id: str,
        remote_album_url: Optional[str] = None,
        total_items_in_album: Optional[int] = None,
        discovered_via_remote_lookup: Optional[bool] = None,
        album_deleted: bool = False,
    ):
        """Insert or update the mapping; None-valued optionals keep the stored value."""

    @abstractmethod
    def get_folder_album_mapping(self, identity: str, source_folder_id: str):
        """The mapping or None."""

    @abstractmethod
    def get_folder_album_mappings(self, identity: str, source_folder_ids: Iterable[str]) -> Dict[str, Any]:
        """Mappings keyed by folder id."""

    @abstractmethod
    def mark_album_deleted(self, identity: str, source_folder_id: str) -> bool:
        """Flag the mapping's remote album as gone."""
