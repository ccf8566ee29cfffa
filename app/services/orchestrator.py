"""Generation job submission and status reconciliation.

Polling and the webhook both funnel into ``reconcile``. Status transitions
are written with a compare-and-swap on ``Dish.version`` so that when both
paths observe the same SUCCEEDED job concurrently only one of them wins the
transition, and only the winner enqueues the asset migration.
"""
import logging
from dataclasses import dataclass

from sqlalchemy import select, update

from app.config import settings
from app.database import async_session
from app.models.dish import Dish
from app.schemas.generation import (
    FAILED_STATES,
    IN_FLIGHT_STATES,
    SUCCEEDED,
    AssetUrls,
    JobStatus,
)
from app.services.mesh_client import MeshClient
from app.services.task_queue import MigrationQueue
from app.utils.exceptions import ExternalServiceError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("succeeded", "failed")


@dataclass
class ReconcileResult:
    dish_id: str
    dish_status: str
    progress: int
    job_status: str
    changed: bool = False
    migration_task_id: str | None = None
    ignored: str | None = None


def _clamp(progress: int) -> int:
    return max(0, min(100, int(progress)))


class GenerationOrchestrator:
    def __init__(
        self,
        mesh_client: MeshClient,
        queue: MigrationQueue,
        session_factory=async_session,
        webhook_url: str | None = None,
    ):
        self.mesh_client = mesh_client
        self.queue = queue
        self.session_factory = session_factory
        self.webhook_url = webhook_url

    async def _load(self, dish_id: str | None) -> Dish:
        if not dish_id:
            raise ValidationError("dish_id is required")
        async with self.session_factory() as db:
            dish = await db.get(Dish, dish_id)
        if dish is None:
            raise NotFoundError("Dish not found")
        return dish

    async def submit(self, dish_id: str | None) -> str:
        """Start a generation job for the dish's photos; returns the job id.

        Errors from the generation service propagate: the job never started
        and the dish is left untouched.
        """
        dish = await self._load(dish_id)
        photos = sorted(dish.photos, key=lambda p: p.sort_order)
        if len(photos) < settings.min_photos:
            raise ValidationError(
                f"At least {settings.min_photos} photos are required to generate a 3D model"
            )
        if len(photos) > settings.max_photos:
            raise ValidationError(f"At most {settings.max_photos} photos can be used")

        job_id = await self.mesh_client.submit([p.photo_url for p in photos], self.webhook_url)

        async with self.session_factory() as db:
            await db.execute(
                update(Dish)
                .where(Dish.id == dish.id)
                .values(
                    job_id=job_id,
                    model_status="processing",
                    progress=0,
                    version=Dish.version + 1,
                )
            )
            await db.commit()

        if dish.job_id and dish.model_status == "processing":
            logger.warning("Dish %s: job %s abandoned in favour of %s", dish.id, dish.job_id, job_id)
        logger.info("Dish %s submitted as job %s", dish.id, job_id)
        return job_id

    async def _transition(self, dish: Dish, job_id: str, blocked: tuple, **values) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                update(Dish)
                .where(
                    Dish.id == dish.id,
                    Dish.job_id == job_id,
                    Dish.version == dish.version,
                    Dish.model_status.not_in(blocked),
                )
                .values(version=Dish.version + 1, **values)
            )
            await db.commit()
        return result.rowcount == 1

    async def reconcile(self, dish_id: str, job: JobStatus) -> ReconcileResult:
        dish = await self._load(dish_id)
        result = ReconcileResult(
            dish_id=dish.id,
            dish_status=dish.model_status,
            progress=dish.progress,
            job_status=job.status,
        )

        if dish.job_id != job.id:
            result.ignored = "job superseded"
            logger.info("Dish %s ignoring status for abandoned job %s", dish.id, job.id)
            return result

        if job.status in IN_FLIGHT_STATES:
            progress = _clamp(job.progress)
            if dish.model_status == "processing" and progress > dish.progress:
                async with self.session_factory() as db:
                    await db.execute(
                        update(Dish)
                        .where(Dish.id == dish.id, Dish.job_id == job.id, Dish.progress < progress)
                        .values(progress=progress)
                    )
                    await db.commit()
                result.progress = progress
            return result

        if job.status == SUCCEEDED:
            if dish.model_status == "succeeded":
                return result
            urls = AssetUrls.from_job(job)
            if not urls.model_url:
                logger.error("Job %s succeeded without a GLB URL; marking dish %s failed", job.id, dish.id)
                return await self._fail(dish, job, result)

            if not await self._transition(
                dish,
                job.id,
                ("succeeded",),
                model_status="succeeded",
                progress=100,
                model_url=urls.model_url,
                companion_model_url=urls.companion_model_url,
                poster_url=urls.poster_url,
            ):
                logger.info("Dish %s: succeeded transition for job %s already applied", dish.id, job.id)
                return await self._reread(result)

            result.dish_status = "succeeded"
            result.progress = 100
            result.changed = True
            logger.info("Dish %s succeeded (job %s); scheduling migration", dish.id, job.id)
            try:
                result.migration_task_id = await self.queue.enqueue(dish.id, job.id, urls)
            except Exception:
                # the dish is already succeeded with working ephemeral URLs
                logger.exception("Could not enqueue migration for dish %s", dish.id)
            return result

        if job.status in FAILED_STATES:
            if dish.model_status in TERMINAL_STATUSES:
                return result
            return await self._fail(dish, job, result)

        logger.warning("Dish %s: unknown job status %r ignored", dish.id, job.status)
        result.ignored = "unknown status"
        return result

    async def _fail(self, dish: Dish, job: JobStatus, result: ReconcileResult) -> ReconcileResult:
        if not await self._transition(dish, job.id, TERMINAL_STATUSES, model_status="failed"):
            return await self._reread(result)
        reason = job.task_error.message if job.task_error else job.status
        logger.warning("Dish %s failed (job %s): %s", dish.id, job.id, reason)
        result.dish_status = "failed"
        result.changed = True
        return result

    async def _reread(self, result: ReconcileResult) -> ReconcileResult:
        dish = await self._load(result.dish_id)
        result.dish_status = dish.model_status
        result.progress = dish.progress
        return result

    async def poll(self, dish_id: str | None) -> dict:
        """One poll-reconcile cycle for the status endpoint.

        An unreachable generation service is transient here: the stored state
        is returned unchanged and the caller polls again later.
        """
        dish = await self._load(dish_id)
        if not dish.job_id:
            raise ValidationError("Dish has no generation job")

        state = {
            "dish_id": dish.id,
            "job_id": dish.job_id,
            "status": dish.model_status,
            "progress": dish.progress,
            "job_status": None,
            "transient_error": False,
        }
        if dish.model_status in TERMINAL_STATUSES:
            return state

        try:
            job = await self.mesh_client.get_status(dish.job_id)
        except ExternalServiceError as e:
            logger.warning("Polling job %s for dish %s failed: %s", dish.job_id, dish.id, e.message)
            state["transient_error"] = True
            return state

        result = await self.reconcile(dish.id, job)
        state.update(status=result.dish_status, progress=result.progress, job_status=job.status)
        return state

    async def handle_webhook(self, job: JobStatus) -> ReconcileResult | None:
        async with self.session_factory() as db:
            result = await db.execute(select(Dish.id).where(Dish.job_id == job.id))
            dish_id = result.scalars().first()
        if dish_id is None:
            logger.info("Webhook for unknown job %s ignored", job.id)
            return None
        return await self.reconcile(dish_id, job)
