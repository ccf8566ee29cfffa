"""Deferred asset migration.

Each succeeded generation job gets at most one ``MigrationTask`` row; the
unique (dish_id, job_id) constraint is the guard, so a duplicate enqueue from
an overlapping poll and webhook is rejected by the database rather than by
in-process state. The work itself runs as a detached asyncio task so the
request that observed success returns immediately.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from app.database import async_session
from app.models.migration import MigrationTask
from app.schemas.generation import AssetUrls
from app.services.migrator import AssetMigrator

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class MigrationQueue:
    def __init__(self, migrator: AssetMigrator, session_factory=async_session):
        self.migrator = migrator
        self.session_factory = session_factory
        self._in_flight: set[asyncio.Task] = set()

    async def enqueue(self, dish_id: str, job_id: str, urls: AssetUrls) -> str | None:
        """Record and schedule a migration; returns the task id, or None if
        this dish/job pair was already enqueued."""
        task_id = str(uuid.uuid4())
        async with self.session_factory() as db:
            db.add(MigrationTask(
                id=task_id,
                dish_id=dish_id,
                job_id=job_id,
                status="queued",
                created_at=_now(),
            ))
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                logger.info("Migration for dish %s job %s already enqueued", dish_id, job_id)
                return None

        task = asyncio.create_task(self._run(task_id, dish_id, job_id, urls))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        logger.info("Enqueued migration %s for dish %s job %s", task_id, dish_id, job_id)
        return task_id

    async def _set_state(self, task_id: str, **values) -> None:
        async with self.session_factory() as db:
            task = await db.get(MigrationTask, task_id)
            if task is None:
                return
            for key, value in values.items():
                setattr(task, key, value)
            await db.commit()

    async def _run(self, task_id: str, dish_id: str, job_id: str, urls: AssetUrls) -> None:
        await self._set_state(task_id, status="running")
        try:
            report = await self.migrator.migrate(dish_id, job_id, urls)
        except Exception as e:
            # dish keeps its ephemeral URLs until they expire
            logger.exception("Migration %s for dish %s failed", task_id, dish_id)
            await self._set_state(task_id, status="failed", error=str(e), finished_at=_now())
            return

        await self._set_state(
            task_id,
            status=report.status,
            scale_factor=report.scale_factor,
            error=report.error_summary,
            finished_at=_now(),
        )

    @property
    def pending(self) -> int:
        return len(self._in_flight)

    async def join(self) -> None:
        """Wait until every scheduled migration has finished."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    async def list_for_dish(self, dish_id: str) -> list[MigrationTask]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(MigrationTask)
                .where(MigrationTask.dish_id == dish_id)
                .order_by(MigrationTask.created_at)
            )
            return list(result.scalars().all())
