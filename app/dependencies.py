from functools import lru_cache

from fastapi import Header, HTTPException

from app.config import settings
from app.services.mesh_client import build_mesh_client
from app.services.migrator import AssetMigrator
from app.services.orchestrator import GenerationOrchestrator
from app.services.storage import StorageBackend, build_storage
from app.services.task_queue import MigrationQueue

WEBHOOK_PATH = "/api/v1/generation/webhook"


async def verify_api_key(x_api_key: str = Header(default="")) -> None:
    if not settings.api_key:
        return
    if x_api_key != settings.api_key:
        raise HTTPException(status_code=403, detail="Invalid or missing API key")


@lru_cache
def get_storage() -> StorageBackend:
    return build_storage()


@lru_cache
def get_migration_queue() -> MigrationQueue:
    return MigrationQueue(AssetMigrator(get_storage()))


@lru_cache
def get_orchestrator() -> GenerationOrchestrator:
    webhook_url = None
    if settings.public_base_url:
        webhook_url = settings.public_base_url.rstrip("/") + WEBHOOK_PATH
    return GenerationOrchestrator(build_mesh_client(), get_migration_queue(), webhook_url=webhook_url)
