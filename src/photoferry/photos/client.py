"""Google Photos Library API client: staging uploads, media item creation and albums."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import time
from typing import Any, Callable, Dict, Iterator, Optional, Sequence

import httpx

from photoferry.errors import RemoteApiError
from photoferry.settings import MAX_REMOTE_BATCH_SIZE, settings
from photoferry.storage import GoogleCredentials


logger = logging.getLogger(__name__)

NO_BATCH_RESULT = "No result returned from batch create"


@dataclass
class NewMediaItem:
    staging_token: str
    display_name: str


@dataclass
class CreateItemResult:
    staging_token: str
    success: bool
    remote_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class RemoteAlbum:
    id: str
    title: Optional[str] = None
    url: Optional[str] = None
    media_items_count: Optional[int] = None


@dataclass
class AlbumAddResult:
    invalid_ids: list[str] = field(default_factory=list)
    added_count: int = 0


def chunked(values: Sequence[Any], size: int) -> Iterator[list]:
    size = max(1, int(size))
    for start in range(0, len(values), size):
        yield list(values[start:start + size])


class GooglePhotosClient:
    """Remote transfer and album API.

    Batched calls are capped at 50 items. When the remote rejects a whole
    batch as invalid, each item is retried on its own, once more after a
    short delay, so a single bad reference does not sink its siblings.
    """

    _photos_base_url = "https://photoslibrary.googleapis.com/v1"

    def __init__(
        self,
        *,
        transport: Optional[httpx.BaseTransport] = None,
        individual_retry_delay: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._transport = transport
        self._individual_retry_delay = (
            settings.individual_retry_delay_seconds
            if individual_retry_delay is None
            else individual_retry_delay
        )
        self._sleep = sleep

    # Transfer

    def stage_bytes(self, credentials: GoogleCredentials, data: bytes, display_name: str) -> str:
        """Upload raw bytes and return the staging (upload) token."""
        response = self._request(
            credentials,
            "POST",
            "/uploads",
            content=data,
            headers={
                "Content-Type": "application/octet-stream",
                "X-Goog-Upload-File-Name": display_name,
                "X-Goog-Upload-Protocol": "raw",
            },
            timeout=300,
        )
        token = response.text.strip()
        if not token:
            raise RemoteApiError(f"Empty upload token returned for {display_name}")
        return token

    def create_items(self, credentials: GoogleCredentials, items: Sequence[NewMediaItem]) -> list[CreateItemResult]:
        """Exchange staging tokens for media items; one result per input, in order."""
        results: list[CreateItemResult] = []
        for batch in chunked(items, MAX_REMOTE_BATCH_SIZE):
            try:
                results.extend(self._create_batch(credentials, batch))
            except RemoteApiError as exc:
                if not exc.is_validation_error or len(batch) == 1:
                    raise
                logger.warning(
                    "Batch create of %s item(s) rejected (%s), retrying individually",
                    len(batch),
                    exc,
                )
                results.extend(self._create_individually(credentials, batch))
        return results

    def _create_batch(self, credentials: GoogleCredentials, batch: list[NewMediaItem]) -> list[CreateItemResult]:
        response = self._request(
            credentials,
            "POST",
            "/mediaItems:batchCreate",
            json={
                "newMediaItems": [
                    {"simpleMediaItem": {"uploadToken": item.staging_token, "fileName": item.display_name}}
                    for item in batch
                ]
            },
        )
        payload = response.json() or {}
        by_token: Dict[str, Dict[str, Any]] = {}
        for entry in payload.get("newMediaItemResults", []) or []:
            token = entry.get("uploadToken")
            if token:
                by_token[token] = entry

        results = []
        for item in batch:
            entry = by_token.get(item.staging_token)
            if entry is None:
                results.append(CreateItemResult(item.staging_token, False, error=NO_BATCH_RESULT))
                continue
            media_item = entry.get("mediaItem") or {}
            if media_item.get("id"):
                results.append(CreateItemResult(item.staging_token, True, remote_id=media_item["id"]))
            else:
                status = entry.get("status") or {}
                message = status.get("message") or "Unknown error creating media item"
                results.append(CreateItemResult(item.staging_token, False, error=message))
        return results

    def _create_individually(self, credentials: GoogleCredentials, batch: list[NewMediaItem]) -> list[CreateItemResult]:
        results = []
        for item in batch:
            try:
                results.extend(self._create_batch(credentials, [item]))
                continue
            except RemoteApiError as first_error:
                logger.info("Individual create failed for %s (%s), retrying once", item.display_name, first_error)
            self._sleep(self._individual_retry_delay)
            try:
                results.extend(self._create_batch(credentials, [item]))
            except RemoteApiError as exc:
                results.append(CreateItemResult(item.staging_token, False, error=str(exc)))
        return results

    # Albums

    def list_albums(self, credentials: GoogleCredentials) -> list[RemoteAlbum]:
        albums: list[RemoteAlbum] = []
        next_page_token: Optional[str] = None
        while True:
            params = {"pageSize": "50", "excludeNonAppCreatedData": "false"}
            if next_page_token:
                params["pageToken"] = next_page_token
            payload = self._request(credentials, "GET", "/albums", params=params).json() or {}
            for album in payload.get("albums", []) or []:
                albums.append(self._album_from_payload(album))
            next_page_token = payload.get("nextPageToken")
            if not next_page_token:
                break
        return albums

    def create_album(self, credentials: GoogleCredentials, title: str) -> RemoteAlbum:
        payload = self._request(credentials, "POST", "/albums", json={"album": {"title": title}}).json() or {}
        album = self._album_from_payload(payload)
        if not album.id:
            raise RemoteApiError(f"Album create for {title!r} returned no id")
        logger.info("Created remote album %s (%s)", album.id, title)
        return album

    def get_album(self, credentials: GoogleCredentials, album_id: str) -> Optional[RemoteAlbum]:
        """Album details, or None if the album no longer exists."""
        try:
            payload = self._request(credentials, "GET", f"/albums/{album_id}").json() or {}
        except RemoteApiError as exc:
            if exc.is_not_found:
                return None
            raise
        return self._album_from_payload(payload)

    def add_items_to_album(
        self,
        credentials: GoogleCredentials,
        album_id: str,
        remote_ids: Sequence[str],
        *,
        batch_size: int = MAX_REMOTE_BATCH_SIZE,
    ) -> AlbumAddResult:
        result = AlbumAddResult()
        batch_size = max(1, min(MAX_REMOTE_BATCH_SIZE, int(batch_size)))
        for batch in chunked(remote_ids, batch_size):
            try:
                self._add_batch(credentials, album_id, batch)
                result.added_count += len(batch)
            except RemoteApiError as exc:
                if not exc.is_validation_error:
                    raise
                logger.warning(
                    "Add of %s item(s) to album %s rejected (%s), retrying individually",
                    len(batch),
                    album_id,
                    exc,
                )
                for remote_id in batch:
                    if self._add_single(credentials, album_id, remote_id):
                        result.added_count += 1
                    else:
                        result.invalid_ids.append(remote_id)
        if result.invalid_ids:
            logger.warning("%s item(s) rejected as invalid by album %s", len(result.invalid_ids), album_id)
        return result

    def _add_batch(self, credentials: GoogleCredentials, album_id: str, remote_ids: list[str]) -> None:
        self._request(
            credentials,
            "POST",
            f"/albums/{album_id}:batchAddMediaItems",
            json={"mediaItemIds": remote_ids},
        )

    def _add_single(self, credentials: GoogleCredentials, album_id: str, remote_id: str) -> bool:
        for attempt in range(2):
            try:
                self._add_batch(credentials, album_id, [remote_id])
                return True
            except RemoteApiError as exc:
                if not exc.is_validation_error:
                    raise
                if attempt == 0:
                    # Newly created items can take a moment to become visible.
                    self._sleep(self._individual_retry_delay)
        return False

    def _album_from_payload(self, payload: Dict[str, Any]) -> RemoteAlbum:
        count = payload.get("mediaItemsCount")
        try:
            count = int(count) if count is not None else None
        except (TypeError, ValueError):
            count = None
        return RemoteAlbum(
            id=payload.get("id") or "",
            title=payload.get("title"),
            url=payload.get("productUrl"),
            media_items_count=count,
        )

    def _request(
        self,
        credentials: GoogleCredentials,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, str]] = None,
        json: Optional[Dict[str, Any]] = None,
        content: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: int = 60,
    ) -> httpx.Response:
        request_headers = {"Authorization": f"Bearer {credentials.get_access_token()}"}
        request_headers.update(headers or {})
        with httpx.Client(timeout=timeout, transport=self._transport) as client:
            response = client.request(
                method,
                f"{self._photos_base_url}{path}",
                headers=request_headers,
                params=params,
                json=json,
                content=content,
            )
        if response.status_code >= 400:
            if response.status_code == 401:
                credentials.invalidate()
            details: Dict[str, Any]
            try:
                details = response.json()
            except ValueError:
                details = {"message": response.text}
            raise RemoteApiError(
                f"Google Photos API error {response.status_code} for {path}: {response.text}",
                status_code=response.status_code,
                details=details if isinstance(details, dict) else {"body": details},
            )
        return response
