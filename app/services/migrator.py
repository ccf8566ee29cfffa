"""Move generated assets from the generation service's expiring URLs into
durable storage, fixing their real-world scale on the way."""
import asyncio
import logging
from dataclasses import dataclass, field

import httpx
from sqlalchemy import update

from app.config import settings
from app.database import async_session
from app.models.dish import Dish
from app.schemas.generation import AssetUrls
from app.services import glb_rescaler, usdz_patcher
from app.services.storage import (
    BUCKET_MODELS,
    BUCKET_PHOTOS,
    CONTENT_TYPES,
    StorageBackend,
    dish_prefix,
)
from app.utils.exceptions import ExternalServiceError, FormatError

logger = logging.getLogger(__name__)


@dataclass
class AssetOutcome:
    durable_url: str | None = None
    error: str | None = None
    modified: bool = False


@dataclass
class MigrationReport:
    dish_id: str
    job_id: str
    scale_factor: float | None = None
    skipped: str | None = None
    assets: dict[str, AssetOutcome] = field(default_factory=dict)

    @property
    def status(self) -> str:
        if self.skipped:
            return "completed"
        errors = [a for a in self.assets.values() if a.error]
        if not errors:
            return "completed"
        if len(errors) == len(self.assets):
            return "failed"
        return "partial"

    @property
    def error_summary(self) -> str | None:
        errors = [f"{name}: {a.error}" for name, a in self.assets.items() if a.error]
        return "; ".join(errors) or None


class AssetMigrator:
    def __init__(
        self,
        storage: StorageBackend,
        session_factory=async_session,
        target_size: float | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.storage = storage
        self.session_factory = session_factory
        self.target_size = target_size or settings.target_size_meters
        self.timeout = timeout or settings.http_timeout_seconds
        self.transport = transport

    async def _download(self, client: httpx.AsyncClient, url: str) -> bytes:
        try:
            response = await client.get(url)
        except httpx.HTTPError as e:
            raise ExternalServiceError(f"Download failed for {url}: {e}") from e
        if response.is_error:
            raise ExternalServiceError(f"Download failed for {url}: {response.status_code}")
        return response.content

    async def _fetch_all(self, urls: AssetUrls) -> dict[str, bytes | BaseException]:
        wanted = {
            name: url
            for name, url in urls.model_dump().items()
            if url
        }
        async with httpx.AsyncClient(
            timeout=self.timeout, transport=self.transport, follow_redirects=True
        ) as client:
            results = await asyncio.gather(
                *(self._download(client, url) for url in wanted.values()),
                return_exceptions=True,
            )
        return dict(zip(wanted.keys(), results))

    async def _record_url(self, dish_id: str, job_id: str, field_name: str, url: str) -> bool:
        """Write a durable URL unless the dish has moved on to another job."""
        async with self.session_factory() as db:
            result = await db.execute(
                update(Dish)
                .where(
                    Dish.id == dish_id,
                    Dish.job_id == job_id,
                    Dish.model_status == "succeeded",
                )
                .values({field_name: url})
            )
            await db.commit()
        return result.rowcount == 1

    async def _dish_exists(self, dish_id: str) -> bool:
        async with self.session_factory() as db:
            return await db.get(Dish, dish_id) is not None

    async def _store(
        self,
        report: MigrationReport,
        field_name: str,
        bucket: str,
        path: str,
        data: bytes,
        content_type: str,
    ) -> None:
        outcome = report.assets[field_name]
        try:
            url = await self.storage.upload(bucket, path, data, content_type)
            if await self._record_url(report.dish_id, report.job_id, field_name, url):
                outcome.durable_url = url
            elif not await self._dish_exists(report.dish_id):
                # deleted mid-migration; its storage cleanup has already run
                logger.warning("Dish %s deleted during migration; removing %s/%s", report.dish_id, bucket, path)
                await self.storage.remove(bucket, [path])
            else:
                logger.warning(
                    "Dish %s no longer on job %s; %s not recorded",
                    report.dish_id, report.job_id, field_name,
                )
        except Exception as e:
            logger.exception("Upload of %s failed for dish %s", field_name, report.dish_id)
            outcome.error = str(e)

    async def _rescale_glb(self, report: MigrationReport, glb: bytes) -> bytes:
        """Rescaled GLB, or the downloaded bytes if rescaling fails."""
        try:
            scaled, report.scale_factor = await asyncio.to_thread(glb_rescaler.rescale, glb, self.target_size)
        except FormatError as e:
            logger.warning("GLB for dish %s not rescaled, uploading as-is: %s", report.dish_id, e.message)
            return glb
        except Exception:
            logger.exception("GLB rescale crashed for dish %s, uploading as-is", report.dish_id)
            return glb
        report.assets["model_url"].modified = report.scale_factor is not None
        return scaled

    async def _patch_usdz(self, report: MigrationReport, usdz: bytes) -> bytes:
        """USDZ with the scale override, or the downloaded bytes if patching fails."""
        if report.scale_factor is None:
            return usdz
        try:
            patched = await asyncio.to_thread(usdz_patcher.inject, usdz, report.scale_factor)
        except FormatError as e:
            logger.warning("USDZ for dish %s not rescaled, uploading as-is: %s", report.dish_id, e.message)
            return usdz
        except Exception:
            logger.exception("USDZ patch crashed for dish %s, uploading as-is", report.dish_id)
            return usdz
        report.assets["companion_model_url"].modified = True
        return patched

    async def migrate(self, dish_id: str, job_id: str, urls: AssetUrls) -> MigrationReport:
        report = MigrationReport(dish_id=dish_id, job_id=job_id)

        async with self.session_factory() as db:
            dish = await db.get(Dish, dish_id)
            if dish is None or dish.job_id != job_id:
                report.skipped = "dish missing or superseded by a newer job"
                logger.info("Skipping migration for dish %s job %s: %s", dish_id, job_id, report.skipped)
                return report
            prefix = dish_prefix(dish.restaurant_id, dish.id)

        downloads = await self._fetch_all(urls)
        for name, result in downloads.items():
            report.assets[name] = AssetOutcome()
            if isinstance(result, BaseException):
                logger.error("Download of %s failed for dish %s: %s", name, dish_id, result)
                report.assets[name].error = str(result)

        glb = downloads.get("model_url")
        if isinstance(glb, bytes):
            glb = await self._rescale_glb(report, glb)
            await self._store(
                report, "model_url", BUCKET_MODELS, f"{prefix}/model.glb", glb, CONTENT_TYPES["glb"]
            )

        usdz = downloads.get("companion_model_url")
        if isinstance(usdz, bytes):
            usdz = await self._patch_usdz(report, usdz)
            await self._store(
                report, "companion_model_url", BUCKET_MODELS, f"{prefix}/model.usdz", usdz, CONTENT_TYPES["usdz"]
            )

        poster = downloads.get("poster_url")
        if isinstance(poster, bytes):
            await self._store(
                report, "poster_url", BUCKET_PHOTOS, f"{prefix}/thumbnail.png", poster, CONTENT_TYPES["png"]
            )

        logger.info(
            "Migration for dish %s job %s: %s (scale=%s)",
            dish_id, job_id, report.status, report.scale_factor,
        )
        return report
