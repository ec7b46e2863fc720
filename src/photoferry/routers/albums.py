"""Identity-scoped album queue endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from photoferry.dependencies import get_credentials, get_identity, get_service
from photoferry.errors import DuplicateJobError
from photoferry.metadata import (
    ALBUM_CANCELLED,
    ALBUM_IN_PROGRESS_STATUSES,
    ALBUM_PENDING,
    ALBUM_STATUSES,
    AlbumJob,
    AlbumMembership,
    FolderAlbumMapping,
)
from photoferry.models.requests import AddAlbumRequest, RequeueRequest
from photoferry.service import TransferService
from photoferry.storage import GoogleCredentials

router = APIRouter(prefix="/api/v1/albums", tags=["albums"])


def _serialize_album_job(job: AlbumJob) -> dict:
    return {
        "id": job.id,
        "source_folder_id": job.source_folder_id,
        "folder_name": job.folder_name,
        "status": job.status,
        "mode": job.mode,
        "total_files": job.total_files,
        "uploaded_files": job.uploaded_files,
        "remote_album_id": job.remote_album_id,
        "remote_album_url": job.remote_album_url,
        "error": job.error,
        "created_at": job.created_at,
        "started_at": job.started_at,
        "completed_at": job.completed_at,
    }


def _serialize_membership(row: AlbumMembership) -> dict:
    return {
        "id": row.id,
        "album_job_id": row.album_job_id,
        "source_file_id": row.source_file_id,
        "remote_item_id": row.remote_item_id,
        "status": row.status,
        "added_at": row.added_at,
        "error_message": row.error_message,
    }


def _serialize_mapping(mapping: FolderAlbumMapping) -> dict:
    return {
        "source_folder_id": mapping.source_folder_id,
        "folder_name": mapping.folder_name,
        "remote_album_id": mapping.remote_album_id,
        "remote_album_url": mapping.remote_album_url,
        "created_at": mapping.created_at,
        "last_updated_at": mapping.last_updated_at,
        "total_items_in_album": mapping.total_items_in_album,
        "discovered_via_remote_lookup": mapping.discovered_via_remote_lookup,
        "album_deleted": mapping.album_deleted,
    }


def _get_job_or_404(service: TransferService, identity: str, job_id: int) -> AlbumJob:
    job = service.store.get_album_job(identity, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Album job not found")
    return job


@router.post("")
async def add_album_job(
    body: AddAlbumRequest,
    identity: str = Depends(get_identity),
    service: TransferService = Depends(get_service),
):
    """Queue a folder for album creation."""
    try:
        job = service.albums.enqueue(identity, body.folder_id, body.folder_name)
    except DuplicateJobError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return _serialize_album_job(job)


@router.get("")
async def list_album_jobs(
    status: Optional[str] = Query(default=None),
    identity: str = Depends(get_identity),
    service: TransferService = Depends(get_service),
):
    """List album jobs, optionally filtered by status."""
    if status and status not in ALBUM_STATUSES:
        raise HTTPException(status_code=400, detail=f"Invalid status: {status}")
    jobs = service.store.get_album_jobs(identity, status)
    return {"jobs": [_serialize_album_job(job) for job in jobs], "count": len(jobs)}


@router.get("/stats")
async def get_album_stats(
    identity: str = Depends(get_identity),
    service: TransferService = Depends(get_service),
):
    """Per-status job counts and whether a run is active."""
    return {
        "queue": service.store.get_album_queue_stats(identity),
        "is_processing": service.albums.is_running(identity),
    }


@router.get("/mappings")
async def get_folder_mappings(
    folder_ids: Optional[list[str]] = Query(default=None),
    identity: str = Depends(get_identity),
    service: TransferService = Depends(get_service),
):
    """Folder to album mappings for a set of folders."""
    mappings = service.store.get_folder_album_mappings(identity, folder_ids or [])
    return {folder_id: _serialize_mapping(mapping) for folder_id, mapping in mappings.items()}


@router.post("/process")
async def start_album_processing(
    identity: str = Depends(get_identity),
    credentials: GoogleCredentials = Depends(get_credentials),
    service: TransferService = Depends(get_service),
):
    """Start processing pending album jobs in the background."""
    started = service.start_albums_in_background(identity, credentials)
    return {"status": "started" if started else "already_running"}


@router.post("/stop")
async def stop_album_processing(
    identity: str = Depends(get_identity),
    service: TransferService = Depends(get_service),
):
    """Stop album processing for the identity."""
    failed = service.albums.stop_processing(identity)
    return {"status": "stopped", "failed_items": failed}


@router.post("/requeue-failed")
async def requeue_failed_jobs(
    body: Optional[RequeueRequest] = None,
    identity: str = Depends(get_identity),
    service: TransferService = Depends(get_service),
):
    """Put failed or cancelled album jobs back to PENDING."""
    ids = body.ids if body else None
    return {"requeued": service.store.requeue_album_jobs(identity, ids)}


@router.post("/discover")
def discover_album(
    body: AddAlbumRequest,
    identity: str = Depends(get_identity),
    credentials: GoogleCredentials = Depends(get_credentials),
    service: TransferService = Depends(get_service),
):
    """Return the folder's album mapping, looking up a remote album by title if none is stored."""
    mapping = service.albums.discover_album_for_folder(identity, credentials, body.folder_id, body.folder_name)
    return {"mapping": _serialize_mapping(mapping) if mapping is not None else None}


@router.get("/{job_id}")
async def get_album_job(
    job_id: int,
    identity: str = Depends(get_identity),
    service: TransferService = Depends(get_service),
):
    """One album job."""
    return _serialize_album_job(_get_job_or_404(service, identity, job_id))


@router.get("/{job_id}/items")
async def list_album_items(
    job_id: int,
    status: Optional[str] = Query(default=None),
    identity: str = Depends(get_identity),
    service: TransferService = Depends(get_service),
):
    """Membership rows of a job (e.g. status=FAILED for the failed-items view)."""
    _get_job_or_404(service, identity, job_id)
    rows = service.store.get_album_memberships(job_id, status)
    return {"items": [_serialize_membership(row) for row in rows], "count": len(rows)}


@router.post("/{job_id}/cancel")
async def cancel_album_job(
    job_id: int,
    identity: str = Depends(get_identity),
    service: TransferService = Depends(get_service),
):
    """Mark a pending or in-progress job CANCELLED."""
    _get_job_or_404(service, identity, job_id)
    cancelled = service.store.transition_album_job(
        identity,
        job_id,
        (ALBUM_PENDING,) + ALBUM_IN_PROGRESS_STATUSES,
        status=ALBUM_CANCELLED,
        completed_at=datetime.utcnow(),
    )
    if not cancelled:
        job = _get_job_or_404(service, identity, job_id)
        raise HTTPException(status_code=409, detail=f"Album job is already {job.status}")
    return {"id": job_id, "status": ALBUM_CANCELLED}


@router.delete("/{job_id}")
async def delete_album_job(
    job_id: int,
    identity: str = Depends(get_identity),
    service: TransferService = Depends(get_service),
):
    """Delete a job that is not currently being processed."""
    job = _get_job_or_404(service, identity, job_id)
    if job.status in ALBUM_IN_PROGRESS_STATUSES:
        raise HTTPException(status_code=409, detail="Album job is being processed")
    service.store.delete_album_job(identity, job_id)
    return {"deleted": job_id}
