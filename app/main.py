import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from app.config import settings
from app.database import create_tables
from app.dependencies import get_migration_queue, verify_api_key
from app.routers.dishes import router as dishes_router
from app.routers.generation import router as generation_router, webhook_router
from app.utils.exceptions import register_exception_handlers

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

MEDIA_DIR = os.path.join(settings.data_dir, "storage")


@asynccontextmanager
async def lifespan(app: FastAPI):
    await create_tables()
    yield
    queue = get_migration_queue()
    if queue.pending:
        logger.info("Waiting for %d migrations before shutdown", queue.pending)
        await queue.join()


app = FastAPI(
    title="Dish AR API",
    description="3D model generation and AR asset pipeline for restaurant dishes",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

_api_key_dep = [Depends(verify_api_key)]

app.include_router(dishes_router, prefix="/api/v1", dependencies=_api_key_dep)
app.include_router(generation_router, prefix="/api/v1", dependencies=_api_key_dep)
app.include_router(webhook_router, prefix="/api/v1")

if settings.storage_backend == "local":
    os.makedirs(MEDIA_DIR, exist_ok=True)
    app.mount("/media", StaticFiles(directory=MEDIA_DIR), name="media")


@app.get("/health")
async def health_check():
    return {"status": "success", "data": {"service": "dish-ar-api", "version": "0.1.0"}, "message": None}
