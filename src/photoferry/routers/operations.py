"""Operation status endpoints."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from photoferry.dependencies import get_identity, get_service
from photoferry.service import TransferService

router = APIRouter(prefix="/api/v1/operations", tags=["operations"])


@router.get("")
async def list_operations(
    status: Optional[str] = Query(default=None),
    identity: str = Depends(get_identity),
    service: TransferService = Depends(get_service),
):
    """Tracked operations for the identity."""
    operations = service.operations.list_operations(status=status, identity=identity)
    return {"operations": [op.to_dict() for op in operations]}


@router.get("/{operation_id}")
async def get_operation(
    operation_id: str,
    identity: str = Depends(get_identity),
    service: TransferService = Depends(get_service),
):
    """One tracked operation."""
    operation = service.operations.get_operation(operation_id)
    if operation is None or operation.metadata.get("identity") != identity:
        raise HTTPException(status_code=404, detail="Operation not found")
    return operation.to_dict()
