"""Pydantic request models for API endpoints."""

from typing import Optional

from pydantic import BaseModel, Field


class EnqueueFilesRequest(BaseModel):
    """Request model for adding source files to the upload queue."""
    file_ids: list[str] = Field(min_length=1)


class AddAlbumRequest(BaseModel):
    """Request model for queueing a folder as an album job."""
    folder_id: str = Field(min_length=1)
    folder_name: str = Field(min_length=1)


class RequeueRequest(BaseModel):
    """Optional explicit ids; all failed rows when omitted."""
    ids: Optional[list[int]] = None


class EnqueueAllRequest(BaseModel):
    """Request model for queueing every file under a folder tree."""
    folder_id: str = Field(min_length=1)
    folder_name: Optional[str] = None


class IgnoreFileRequest(BaseModel):
    """Request model for adding a file to or removing it from the ignore list."""
    file_id: str = Field(min_length=1)
    reason: Optional[str] = None
