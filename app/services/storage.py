"""Durable object storage for photos and generated models."""
import logging
import os
from urllib.parse import quote

import httpx

from app.config import settings
from app.utils.exceptions import ExternalServiceError, ValidationError

logger = logging.getLogger(__name__)

BUCKET_PHOTOS = "photos"
BUCKET_MODELS = "models"

CONTENT_TYPES = {
    "glb": "model/gltf-binary",
    "usdz": "model/vnd.usdz+zip",
    "png": "image/png",
}


def dish_prefix(restaurant_id: str | None, dish_id: str) -> str:
    return f"{restaurant_id or 'unassigned'}/{dish_id}"


class StorageBackend:
    async def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        raise NotImplementedError

    async def list_files(self, bucket: str, prefix: str) -> list[str]:
        raise NotImplementedError

    async def remove(self, bucket: str, paths: list[str]) -> None:
        raise NotImplementedError

    def public_url(self, bucket: str, path: str) -> str:
        raise NotImplementedError


class LocalStorage(StorageBackend):
    """Buckets are directories under ``root``; files are served at /media."""

    def __init__(self, root: str, base_url: str = ""):
        self.root = root
        self.base_url = base_url.rstrip("/")

    def _resolve(self, bucket: str, path: str) -> str:
        bucket_dir = os.path.abspath(os.path.join(self.root, bucket))
        full = os.path.abspath(os.path.join(bucket_dir, path))
        if full != bucket_dir and not full.startswith(bucket_dir + os.sep):
            raise ValidationError(f"Invalid storage path: {path}")
        return full

    async def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        full = self._resolve(bucket, path)
        os.makedirs(os.path.dirname(full), exist_ok=True)
        with open(full, "wb") as f:
            f.write(data)
        logger.info("Stored %s/%s (%d bytes, %s)", bucket, path, len(data), content_type)
        return self.public_url(bucket, path)

    async def list_files(self, bucket: str, prefix: str) -> list[str]:
        directory = self._resolve(bucket, prefix)
        if not os.path.isdir(directory):
            return []
        return sorted(
            name for name in os.listdir(directory)
            if os.path.isfile(os.path.join(directory, name))
        )

    async def remove(self, bucket: str, paths: list[str]) -> None:
        for path in paths:
            full = self._resolve(bucket, path)
            if os.path.exists(full):
                os.remove(full)

    def public_url(self, bucket: str, path: str) -> str:
        return f"{self.base_url}/media/{bucket}/{quote(path)}"


class SupabaseStorage(StorageBackend):
    """Supabase Storage REST API, authenticated with the service role key."""

    def __init__(
        self,
        url: str,
        service_role_key: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url.rstrip("/")
        self.timeout = timeout
        self.transport = transport
        self.headers = {
            "Authorization": f"Bearer {service_role_key}",
            "apikey": service_role_key,
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=f"{self.url}/storage/v1",
            headers=self.headers,
            timeout=self.timeout,
            transport=self.transport,
        )

    async def _send(self, method: str, endpoint: str, **kwargs) -> httpx.Response:
        try:
            async with self._client() as client:
                response = await client.request(method, endpoint, **kwargs)
        except httpx.HTTPError as e:
            raise ExternalServiceError(f"Storage request failed: {e}") from e
        if response.is_error:
            raise ExternalServiceError(
                f"Storage {method} {endpoint} failed ({response.status_code}): {response.text}"
            )
        return response

    async def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        await self._send(
            "POST",
            f"/object/{bucket}/{quote(path)}",
            content=data,
            headers={"Content-Type": content_type, "x-upsert": "true"},
        )
        logger.info("Uploaded %s/%s (%d bytes, %s)", bucket, path, len(data), content_type)
        return self.public_url(bucket, path)

    async def list_files(self, bucket: str, prefix: str) -> list[str]:
        response = await self._send(
            "POST",
            f"/object/list/{bucket}",
            json={"prefix": prefix, "limit": 1000, "offset": 0},
        )
        return [item["name"] for item in response.json() if item.get("name")]

    async def remove(self, bucket: str, paths: list[str]) -> None:
        if not paths:
            return
        await self._send("DELETE", f"/object/{bucket}", json={"prefixes": paths})

    def public_url(self, bucket: str, path: str) -> str:
        return f"{self.url}/storage/v1/object/public/{bucket}/{quote(path)}"


def build_storage() -> StorageBackend:
    if settings.storage_backend == "supabase":
        return SupabaseStorage(
            settings.supabase_url,
            settings.supabase_service_role_key,
            timeout=settings.http_timeout_seconds,
        )
    return LocalStorage(os.path.join(settings.data_dir, "storage"), settings.public_base_url)
