"""Google OAuth credentials and the Google Drive source file store."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from threading import Lock
from typing import Any, Dict, Iterator, Optional

import httpx

from photoferry.coordination import CancellationToken
from photoferry.errors import OperationCancelled, RemoteApiError
from photoferry.settings import settings


logger = logging.getLogger(__name__)

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
TOKEN_URL = "https://oauth2.googleapis.com/token"

_FILE_FIELDS = "id,name,mimeType,size,parents"


class GoogleCredentials:
    """Access token with an optional refresh-token flow.

    One instance is shared by every worker of a run, so refreshing is
    serialized behind a lock.
    """

    def __init__(
        self,
        access_token: Optional[str] = None,
        *,
        refresh_token: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        if not access_token and not refresh_token:
            raise ValueError("GoogleCredentials requires an access_token or a refresh_token")
        self._access_token = access_token
        self._refresh_token = refresh_token
        self._client_id = client_id or settings.google_client_id
        self._client_secret = client_secret or settings.google_client_secret
        self._expires_at = expires_at
        self._transport = transport
        self._lock = Lock()

    @classmethod
    def from_bearer(cls, token: str) -> "GoogleCredentials":
        return cls(access_token=token)

    @property
    def can_refresh(self) -> bool:
        return bool(self._refresh_token and self._client_id and self._client_secret)

    def get_access_token(self) -> str:
        with self._lock:
            if self._access_token and not self._is_expiring():
                return self._access_token
            if not self.can_refresh:
                if self._access_token:
                    return self._access_token
                raise RemoteApiError("No access token and no refresh credentials configured", status_code=401)
            self._refresh()
            return self._access_token

    def invalidate(self) -> None:
        """Force a refresh on next use (after a 401)."""
        with self._lock:
            if self.can_refresh:
                self._expires_at = datetime.utcnow()

    def _is_expiring(self) -> bool:
        if self._expires_at is None:
            return False
        return datetime.utcnow() + timedelta(seconds=30) >= self._expires_at

    def _refresh(self) -> None:
        with httpx.Client(timeout=30, transport=self._transport) as client:
            response = client.post(
                TOKEN_URL,
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": self._refresh_token,
                    "grant_type": "refresh_token",
                },
            )

        if response.status_code >= 400:
            raise RemoteApiError(
                f"Failed to refresh Google access token: {response.text}",
                status_code=response.status_code,
            )

        payload = response.json()
        access_token = payload.get("access_token")
        expires_in = int(payload.get("expires_in") or 3600)
        if not access_token:
            raise RemoteApiError("Google token response missing access_token", status_code=401)

        self._access_token = access_token
        self._expires_at = datetime.utcnow() + timedelta(seconds=expires_in)
        logger.debug("Refreshed Google access token (expires in %ss)", expires_in)


@dataclass
class SourceEntry:
    """Normalized source file or folder metadata."""

    id: str
    name: Optional[str] = None
    mime_type: Optional[str] = None
    size: Optional[int] = None
    parent_id: Optional[str] = None

    @property
    def is_folder(self) -> bool:
        return self.mime_type == FOLDER_MIME_TYPE


class GoogleDriveSource:
    """Google Drive-backed source file store."""

    provider_name = "gdrive"

    _drive_base_url = "https://www.googleapis.com/drive/v3"

    def __init__(self, *, transport: Optional[httpx.BaseTransport] = None, chunk_size: int = 1024 * 1024):
        self._transport = transport
        self._chunk_size = chunk_size

    def get_file(self, credentials: GoogleCredentials, file_id: str) -> SourceEntry:
        response = self._request(
            credentials,
            "GET",
            f"/files/{file_id}",
            params={"fields": _FILE_FIELDS, "supportsAllDrives": "true"},
        )
        return self._entry_from_file(response.json())

    def list_folder(self, credentials: GoogleCredentials, folder_id: str) -> Iterator[SourceEntry]:
        """Direct children of a folder (files and sub-folders), all pages."""
        next_page_token: Optional[str] = None
        while True:
            params = {
                "q": f"'{folder_id}' in parents and trashed = false",
                "fields": f"nextPageToken,files({_FILE_FIELDS})",
                "pageSize": "1000",
                "includeItemsFromAllDrives": "true",
                "supportsAllDrives": "true",
            }
            if next_page_token:
                params["pageToken"] = next_page_token

            response = self._request(credentials, "GET", "/files", params=params)
            payload = response.json()
            for item in payload.get("files", []) or []:
                yield self._entry_from_file(item)

            next_page_token = payload.get("nextPageToken")
            if not next_page_token:
                break

    def download_file(
        self,
        credentials: GoogleCredentials,
        file_id: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> bytes:
        """Download full file bytes; cancellation is checked between chunks."""
        headers = {"Authorization": f"Bearer {credentials.get_access_token()}"}
        path = f"/files/{file_id}"
        chunks: list[bytes] = []
        with httpx.Client(timeout=120, transport=self._transport) as client:
            with client.stream(
                "GET",
                f"{self._drive_base_url}{path}",
                headers=headers,
                params={"alt": "media", "supportsAllDrives": "true"},
            ) as response:
                if response.status_code >= 400:
                    detail = response.read().decode("utf-8", errors="replace")
                    self._raise_for_status(credentials, response.status_code, path, detail)
                for chunk in response.iter_bytes(self._chunk_size):
                    if cancel_token is not None and cancel_token.cancelled:
                        raise OperationCancelled(f"Download of {file_id} cancelled")
                    chunks.append(chunk)
        return b"".join(chunks)

    def _entry_from_file(self, item: Dict[str, Any]) -> SourceEntry:
        size = item.get("size")
        try:
            size = int(size) if size is not None else None
        except (TypeError, ValueError):
            size = None
        parents = item.get("parents") or []
        return SourceEntry(
            id=item.get("id") or "",
            name=item.get("name"),
            mime_type=item.get("mimeType"),
            size=size,
            parent_id=parents[0] if parents else None,
        )

    def _request(
        self,
        credentials: GoogleCredentials,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, str]] = None,
        timeout: int = 60,
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {credentials.get_access_token()}"}
        with httpx.Client(timeout=timeout, transport=self._transport) as client:
            response = client.request(
                method,
                f"{self._drive_base_url}{path}",
                headers=headers,
                params=params,
            )
        if response.status_code >= 400:
            self._raise_for_status(credentials, response.status_code, path, response.text)
        return response

    def _raise_for_status(self, credentials: GoogleCredentials, status_code: int, path: str, detail: str) -> None:
        if status_code == 401:
            credentials.invalidate()
        raise RemoteApiError(
            f"Google Drive API error {status_code} for {path}: {detail}",
            status_code=status_code,
        )
