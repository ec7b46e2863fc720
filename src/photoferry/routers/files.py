"""Identity-scoped ignore list endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from photoferry.dependencies import get_identity, get_service
from photoferry.metadata import UPLOAD_PENDING, UPLOAD_UPLOADING
from photoferry.models.requests import IgnoreFileRequest
from photoferry.service import TransferService

router = APIRouter(prefix="/api/v1/files", tags=["files"])

USER_IGNORED = "Ignored by user"


@router.get("/ignore")
async def get_ignore_status(
    file_id: str = Query(..., min_length=1),
    identity: str = Depends(get_identity),
    service: TransferService = Depends(get_service),
):
    """Whether a file is on the ignore list."""
    return {"file_id": file_id, "ignored": service.store.is_file_ignored(identity, file_id)}


@router.post("/ignore")
async def ignore_file(
    body: IgnoreFileRequest,
    identity: str = Depends(get_identity),
    service: TransferService = Depends(get_service),
):
    """Put a file on the ignore list; queued files must be removed from the queue first."""
    item = service.store.find_upload_item(identity, body.file_id)
    if item is not None and item.status in (UPLOAD_PENDING, UPLOAD_UPLOADING):
        raise HTTPException(
            status_code=400,
            detail="Cannot ignore a file that is in the upload queue. Remove it from the queue first.",
        )
    service.store.ignore_file(identity, body.file_id, body.reason or USER_IGNORED)
    return {"file_id": body.file_id, "ignored": True}


@router.delete("/ignore")
async def unignore_file(
    file_id: str = Query(..., min_length=1),
    identity: str = Depends(get_identity),
    service: TransferService = Depends(get_service),
):
    """Take a file off the ignore list."""
    removed = service.store.unignore_file(identity, file_id)
    return {"file_id": file_id, "ignored": False, "removed": removed}
