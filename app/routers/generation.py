import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from pydantic import ValidationError as PayloadError

from app.database import async_session
from app.dependencies import get_migration_queue, get_orchestrator
from app.models.dish import Dish
from app.schemas.generation import GenerateRequest, JobStatus, MigrationTaskResponse
from app.services.orchestrator import GenerationOrchestrator
from app.services.progress import ProgressRelay
from app.services.task_queue import MigrationQueue
from app.utils.exceptions import NotFoundError, ValidationError
from app.utils.response import sse_event, success_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/generation", tags=["generation"])
# Called by the generation service, which cannot send our API key.
webhook_router = APIRouter(prefix="/generation", tags=["generation"])


@router.post("/generate")
async def generate(
    payload: GenerateRequest,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    job_id = await orchestrator.submit(payload.dish_id)
    return success_response(data={"job_id": job_id, "status": "processing"})


@router.get("/task")
async def task_status(
    dish_id: str | None = None,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    return success_response(data=await orchestrator.poll(dish_id))


@router.get("/dishes/{dish_id}/progress")
async def progress_stream(
    dish_id: str,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    async with async_session() as db:
        dish = await db.get(Dish, dish_id)
        if not dish:
            raise NotFoundError("Dish not found")
        status, progress = dish.model_status, dish.progress

    relay = ProgressRelay(lambda: orchestrator.poll(dish_id), status, progress)

    async def events():
        async for frame in relay.frames():
            yield sse_event(frame.as_dict())

    return StreamingResponse(events(), media_type="text/event-stream")


@router.get("/dishes/{dish_id}/migrations")
async def list_migrations(
    dish_id: str,
    queue: MigrationQueue = Depends(get_migration_queue),
):
    tasks = await queue.list_for_dish(dish_id)
    return success_response(data=[MigrationTaskResponse.model_validate(t).model_dump() for t in tasks])


@webhook_router.post("/webhook")
async def webhook(
    request: Request,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Invalid JSON")
    try:
        job = JobStatus.model_validate(body)
    except PayloadError:
        raise ValidationError("Invalid job status payload")

    try:
        await orchestrator.handle_webhook(job)
    except Exception:
        # acknowledge anyway; the poll path reconciles the same job
        logger.exception("Webhook reconciliation failed for job %s", job.id)
    return success_response(data={"ok": True})
