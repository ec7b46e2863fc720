"""Identity-scoped upload queue endpoints."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from photoferry.dependencies import get_credentials, get_identity, get_service
from photoferry.errors import PhotoferryError
from photoferry.metadata import UPLOAD_STATUSES, UploadItem
from photoferry.models.requests import EnqueueAllRequest, EnqueueFilesRequest, RequeueRequest
from photoferry.service import TransferService
from photoferry.storage import GoogleCredentials

router = APIRouter(prefix="/api/v1/queue", tags=["queue"])


def _serialize_upload_item(item: UploadItem) -> dict:
    return {
        "id": item.id,
        "source_file_id": item.source_file_id,
        "display_name": item.display_name,
        "content_type": item.content_type,
        "size_bytes": item.size_bytes,
        "status": item.status,
        "added_at": item.added_at,
        "started_at": item.started_at,
        "completed_at": item.completed_at,
        "error": item.error,
        "remote_item_id": item.remote_item_id,
    }


@router.post("")
def enqueue_files(
    body: EnqueueFilesRequest,
    identity: str = Depends(get_identity),
    credentials: GoogleCredentials = Depends(get_credentials),
    service: TransferService = Depends(get_service),
):
    """Add source files to the upload queue."""
    result = service.uploads.enqueue(identity, credentials, body.file_ids)
    return result.as_dict()


@router.post("/enqueue-all")
def enqueue_folder_tree(
    body: EnqueueAllRequest,
    identity: str = Depends(get_identity),
    credentials: GoogleCredentials = Depends(get_credentials),
    service: TransferService = Depends(get_service),
):
    """Add every file under a folder and its sub-folders to the upload queue."""
    try:
        result = service.albums.enqueue_all(identity, credentials, body.folder_id, body.folder_name)
    except PhotoferryError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return result.as_dict()


@router.get("")
async def list_upload_items(
    status: Optional[str] = Query(default=None),
    identity: str = Depends(get_identity),
    service: TransferService = Depends(get_service),
):
    """List upload items, optionally filtered by status."""
    if status and status not in UPLOAD_STATUSES:
        raise HTTPException(status_code=400, detail=f"Invalid status: {status}")
    items = service.store.get_upload_items(identity, status)
    return {"items": [_serialize_upload_item(item) for item in items], "count": len(items)}


@router.get("/stats")
async def get_queue_stats(
    identity: str = Depends(get_identity),
    service: TransferService = Depends(get_service),
):
    """Per-status counts, recent throughput and whether a run is active."""
    return service.uploads.get_upload_stats(identity)


@router.post("/process")
async def start_queue_processing(
    identity: str = Depends(get_identity),
    credentials: GoogleCredentials = Depends(get_credentials),
    service: TransferService = Depends(get_service),
):
    """Start draining the upload queue in the background."""
    started = service.start_uploads_in_background(identity, credentials)
    return {"status": "started" if started else "already_running"}


@router.post("/stop")
async def stop_queue_processing(
    identity: str = Depends(get_identity),
    service: TransferService = Depends(get_service),
):
    """Stop the identity's upload run."""
    failed = service.uploads.stop(identity)
    return {"status": "stopped", "failed_items": failed}


@router.post("/requeue-failed")
async def requeue_failed_items(
    body: Optional[RequeueRequest] = None,
    identity: str = Depends(get_identity),
    service: TransferService = Depends(get_service),
):
    """Put failed upload items back to pending."""
    ids = body.ids if body else None
    return {"requeued": service.store.requeue_upload_items(identity, ids)}


@router.post("/clear")
async def clear_completed_items(
    identity: str = Depends(get_identity),
    service: TransferService = Depends(get_service),
):
    """Delete completed upload items."""
    return {"removed": service.store.clear_completed_upload_items(identity)}


@router.delete("/{item_id}")
async def delete_upload_item(
    item_id: int,
    identity: str = Depends(get_identity),
    service: TransferService = Depends(get_service),
):
    """Remove one item from the queue."""
    if not service.store.delete_upload_item(identity, item_id):
        raise HTTPException(status_code=404, detail="Upload item not found")
    return {"deleted": item_id}
