from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from ..config import Settings

_TRANSIENT_STATUS = frozenset({408, 425, 429})
_LIST_PAGE_SIZE = 1000


class StorageServiceError(RuntimeError):
    """Raised when the object-storage backend returns an error."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error = error

    @property
    def transient(self) -> bool:
        if self.status_code is None:
            return True
        return self.status_code in _TRANSIENT_STATUS or self.status_code >= 500


class StorageObjectNotFoundError(StorageServiceError):
    """Raised when the backend reports an object is missing."""

    @property
    def transient(self) -> bool:
        return False


@dataclass(slots=True)
class StoredObject:
    data: bytes
    content_type: str


class ObjectStorage(Protocol):
    """Key/value object storage scoped by bucket name."""

    async def put(self, bucket: str, key: str, data: bytes, content_type: str) -> None: ...

    async def get(self, bucket: str, key: str) -> StoredObject: ...

    async def exists(self, bucket: str, key: str) -> bool: ...

    async def list(self, bucket: str, prefix: str = "") -> list[str]: ...

    async def delete(self, bucket: str, key: str) -> bool: ...


def _require_location(bucket: str, key: str) -> str:
    if not bucket:
        raise StorageServiceError("storage bucket is required")
    normalized = (key or "").lstrip("/")
    if not normalized:
        raise StorageServiceError("storage key is required")
    return normalized


def _is_not_found(response: httpx.Response) -> bool:
    if response.status_code == 404:
        return True
    if response.status_code != 400:
        return False
    try:
        payload = response.json()
    except ValueError:
        return False
    if not isinstance(payload, dict):
        return False
    return str(payload.get("error") or "") == "not_found" or str(
        payload.get("statusCode") or ""
    ) == "404"


class SupabaseObjectStorage:
    """Object storage backed by a Supabase Storage compatible REST API."""

    def __init__(
        self,
        *,
        api_url: str,
        service_key: str,
        timeout: float = 10.0,
    ) -> None:
        self._api_url = api_url.rstrip("/")
        self._service_key = service_key
        self._timeout = timeout

    def _headers(self, **extra: str) -> dict[str, str]:
        headers = {
            "apikey": self._service_key,
            "Authorization": f"Bearer {self._service_key}",
        }
        headers.update(extra)
        return headers

    def _object_url(self, scope: str, bucket: str, key: str) -> str:
        quoted = quote(key, safe="/")
        prefix = f"{self._api_url}/storage/v1/object"
        if scope:
            prefix = f"{prefix}/{scope}"
        return f"{prefix}/{quote(bucket, safe='')}/{quoted}"

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            try:
                return await client.request(method, url, **kwargs)
            except httpx.HTTPError as exc:
                raise StorageServiceError(
                    f"Failed to call object storage: {exc.__class__.__name__}"
                ) from exc

    async def put(self, bucket: str, key: str, data: bytes, content_type: str) -> None:
        normalized = _require_location(bucket, key)
        response = await self._send(
            "POST",
            self._object_url("", bucket, normalized),
            content=data,
            headers=self._headers(
                **{
                    "Content-Type": content_type,
                    "x-upsert": "true",
                    "cache-control": "max-age=86400",
                }
            ),
        )
        if response.status_code >= 400:
            raise StorageServiceError(
                f"Object storage upload failed with status {response.status_code}",
                status_code=response.status_code,
            )

    async def get(self, bucket: str, key: str) -> StoredObject:
        normalized = _require_location(bucket, key)
        response = await self._send(
            "GET",
            self._object_url("authenticated", bucket, normalized),
            headers=self._headers(),
        )
        if _is_not_found(response):
            raise StorageObjectNotFoundError(
                f"Object not found: {bucket}/{normalized}",
                status_code=response.status_code,
                error="not_found",
            )
        if response.status_code >= 400:
            raise StorageServiceError(
                f"Object storage download failed with status {response.status_code}",
                status_code=response.status_code,
            )
        content_type = response.headers.get("content-type") or "application/octet-stream"
        return StoredObject(data=response.content, content_type=content_type)

    async def exists(self, bucket: str, key: str) -> bool:
        normalized = _require_location(bucket, key)
        response = await self._send(
            "HEAD",
            self._object_url("authenticated", bucket, normalized),
            headers=self._headers(),
        )
        if response.status_code in {200, 204}:
            return True
        if _is_not_found(response):
            return False
        raise StorageServiceError(
            f"Object storage existence check failed with status {response.status_code}",
            status_code=response.status_code,
        )

    async def list(self, bucket: str, prefix: str = "") -> list[str]:
        if not bucket:
            raise StorageServiceError("storage bucket is required")
        normalized = (prefix or "").lstrip("/")
        folder, _, search = normalized.rpartition("/")
        keys: list[str] = []
        offset = 0
        while True:
            response = await self._send(
                "POST",
                f"{self._api_url}/storage/v1/object/list/{quote(bucket, safe='')}",
                json={
                    "prefix": folder,
                    "search": search,
                    "limit": _LIST_PAGE_SIZE,
                    "offset": offset,
                },
                headers=self._headers(**{"Content-Type": "application/json"}),
            )
            if response.status_code >= 400:
                raise StorageServiceError(
                    f"Object storage list failed with status {response.status_code}",
                    status_code=response.status_code,
                )
            entries = response.json() or []
            for entry in entries:
                name = entry.get("name") if isinstance(entry, dict) else None
                # Folder placeholders carry no id.
                if not name or entry.get("id") is None:
                    continue
                keys.append(f"{folder}/{name}" if folder else name)
            if len(entries) < _LIST_PAGE_SIZE:
                break
            offset += _LIST_PAGE_SIZE
        return sorted(keys)

    async def delete(self, bucket: str, key: str) -> bool:
        normalized = _require_location(bucket, key)
        response = await self._send(
            "DELETE",
            self._object_url("", bucket, normalized),
            headers=self._headers(),
        )
        if response.status_code in {200, 204}:
            return True
        if _is_not_found(response):
            return False
        raise StorageServiceError(
            f"Object storage delete failed with status {response.status_code}",
            status_code=response.status_code,
        )


class InMemoryObjectStorage:
    """Process-local object storage for local runs and tests."""

    def __init__(self) -> None:
        self._objects: dict[tuple[str, str], StoredObject] = {}

    async def put(self, bucket: str, key: str, data: bytes, content_type: str) -> None:
        normalized = _require_location(bucket, key)
        self._objects[(bucket, normalized)] = StoredObject(
            data=bytes(data), content_type=content_type
        )

    async def get(self, bucket: str, key: str) -> StoredObject:
        normalized = _require_location(bucket, key)
        stored = self._objects.get((bucket, normalized))
        if stored is None:
            raise StorageObjectNotFoundError(
                f"Object not found: {bucket}/{normalized}", status_code=404
            )
        return stored

    async def exists(self, bucket: str, key: str) -> bool:
        normalized = _require_location(bucket, key)
        return (bucket, normalized) in self._objects

    async def list(self, bucket: str, prefix: str = "") -> list[str]:
        normalized = (prefix or "").lstrip("/")
        return sorted(
            key
            for stored_bucket, key in self._objects
            if stored_bucket == bucket and key.startswith(normalized)
        )

    async def delete(self, bucket: str, key: str) -> bool:
        normalized = _require_location(bucket, key)
        return self._objects.pop((bucket, normalized), None) is not None


def build_object_storage(config: Settings) -> ObjectStorage:
    if config.storage_backend == "supabase":
        return SupabaseObjectStorage(
            api_url=config.storage_api_url.unicode_string(),
            service_key=config.storage_service_key or "",
            timeout=config.storage_timeout_seconds,
        )
    return InMemoryObjectStorage()


__all__ = [
    "InMemoryObjectStorage",
    "ObjectStorage",
    "StorageObjectNotFoundError",
    "StorageServiceError",
    "StoredObject",
    "SupabaseObjectStorage",
    "build_object_storage",
]
