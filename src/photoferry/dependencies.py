"""Shared dependencies for FastAPI endpoints."""

from fastapi import Header, HTTPException, Request, status

from photoferry.service import TransferService
from photoferry.storage import GoogleCredentials


def get_service(request: Request) -> TransferService:
    """Return the process-wide service created at startup."""
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service not initialized")
    return service


async def get_identity(x_identity: str = Header(..., alias="X-Identity")) -> str:
    """Identity (account namespace) every queue row is partitioned by."""
    identity = (x_identity or "").strip()
    if not identity:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="X-Identity header is required")
    return identity


async def get_credentials(authorization: str = Header(default="")) -> GoogleCredentials:
    """Google access token from an `Authorization: Bearer` header."""
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Bearer access token required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return GoogleCredentials.from_bearer(token.strip())
