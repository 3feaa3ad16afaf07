# dupkite/storage.py
# Blob storage for report photos: Supabase Storage REST API over httpx

from typing import List, Optional, Sequence

import httpx

from .logging_config import get_logger

logger = get_logger(__name__)


class StorageError(Exception):
    """Blob store request failed"""


class PhotoStorage:
    """Blob container operations the services rely on"""

    async def bucket_exists(self, bucket: str) -> bool:
        raise NotImplementedError

    async def create_bucket(self, bucket: str, size_limit: int) -> None:
        raise NotImplementedError

    async def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> None:
        raise NotImplementedError

    async def remove(self, bucket: str, paths: Sequence[str]) -> None:
        raise NotImplementedError

    def public_url(self, bucket: str, path: str) -> str:
        raise NotImplementedError


class SupabaseStorage(PhotoStorage):
    def __init__(self, base_url: str, service_key: str, timeout: float = 30.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.service_key = service_key
        self.timeout = httpx.Timeout(timeout)
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=f"{self.base_url}/storage/v1",
            headers={
                "Authorization": f"Bearer {self.service_key}",
                "apikey": self.service_key,
            },
            timeout=self.timeout,
            transport=self.transport,
        )

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            async with self._client() as client:
                response = await client.request(method, url, **kwargs)
                response.raise_for_status()
                return response
        except httpx.HTTPStatusError as e:
            detail = e.response.text[:200]
            logger.error(f"Storage {method} {url} returned {e.response.status_code}: {detail}")
            raise StorageError(f"{e.response.status_code}: {detail}") from e
        except httpx.HTTPError as e:
            logger.error(f"Storage {method} {url} failed: {e}")
            raise StorageError(str(e)) from e

    async def bucket_exists(self, bucket: str) -> bool:
        response = await self._request("GET", "/bucket")
        buckets: List[dict] = response.json() or []
        return any(b.get("name") == bucket or b.get("id") == bucket for b in buckets)

    async def create_bucket(self, bucket: str, size_limit: int) -> None:
        logger.info(f"Creating storage bucket: {bucket}")
        await self._request("POST", "/bucket", json={
            "id": bucket,
            "name": bucket,
            "public": True,
            "file_size_limit": size_limit,
            "allowed_mime_types": ["image/*"],
        })

    async def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> None:
        logger.debug(f"Uploading blob: {path} ({len(data)} bytes)", extra={"storage_path": path})
        await self._request(
            "POST",
            f"/object/{bucket}/{path}",
            content=data,
            headers={"Content-Type": content_type, "x-upsert": "false"},
        )

    async def remove(self, bucket: str, paths: Sequence[str]) -> None:
        if not paths:
            return
        await self._request("DELETE", f"/object/{bucket}", json={"prefixes": list(paths)})

    def public_url(self, bucket: str, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{bucket}/{path}"
