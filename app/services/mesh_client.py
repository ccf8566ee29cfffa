"""Client for the multi-image-to-3D generation service."""
import logging

import httpx
from pydantic import ValidationError as PayloadError

from app.config import settings
from app.schemas.generation import JobStatus
from app.utils.exceptions import ExternalServiceError, ValidationError

logger = logging.getLogger(__name__)

TASK_ENDPOINT = "/openapi/v1/multi-image-to-3d"


def build_task_body(image_urls: list[str], webhook_url: str | None = None) -> dict:
    body = {
        "image_urls": image_urls,
        "ai_model": settings.meshy_ai_model,
        "should_texture": True,
        "enable_pbr": settings.meshy_enable_pbr,
        "topology": "triangle",
        "target_polycount": settings.meshy_target_polycount,
        "symmetry_mode": "auto",
        "style_enhancement": False,  # keep food photorealistic
    }
    if webhook_url:
        body["webhook_url"] = webhook_url
    return body


class MeshClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=self.timeout,
            transport=self.transport,
        )

    async def _send(self, method: str, endpoint: str, **kwargs) -> dict:
        try:
            async with self._client() as client:
                response = await client.request(method, endpoint, **kwargs)
        except httpx.HTTPError as e:
            raise ExternalServiceError(f"Mesh generation service unreachable: {e}") from e
        if response.is_error:
            raise ExternalServiceError(
                f"Mesh generation {method} {endpoint} failed ({response.status_code}): {response.text}"
            )
        try:
            return response.json()
        except ValueError as e:
            raise ExternalServiceError("Mesh generation service returned invalid JSON") from e

    async def submit(self, image_urls: list[str], webhook_url: str | None = None) -> str:
        """Create a generation job for the ordered photos; returns the job id."""
        if not 1 <= len(image_urls) <= settings.max_photos:
            raise ValidationError(f"Generation requires 1-{settings.max_photos} image URLs")

        data = await self._send("POST", TASK_ENDPOINT, json=build_task_body(image_urls, webhook_url))
        job_id = data.get("result") if isinstance(data, dict) else None
        if not job_id:
            raise ExternalServiceError("Mesh generation service did not return a job id")
        logger.info("Submitted generation job %s with %d photos", job_id, len(image_urls))
        return job_id

    async def get_status(self, job_id: str) -> JobStatus:
        data = await self._send("GET", f"{TASK_ENDPOINT}/{job_id}")
        try:
            return JobStatus.model_validate(data)
        except PayloadError as e:
            raise ExternalServiceError(f"Unexpected job status payload: {e}") from e


def build_mesh_client() -> MeshClient:
    return MeshClient(
        settings.meshy_base_url,
        settings.meshy_api_key,
        timeout=settings.http_timeout_seconds,
    )
