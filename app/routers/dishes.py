import logging
import uuid as uuid_mod
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import func, select

from app.database import async_session
from app.dependencies import get_storage
from app.models.dish import Dish, DishPhoto
from app.schemas.dish import DishCreate, DishResponse, PhotoAttach
from app.services.storage import BUCKET_MODELS, BUCKET_PHOTOS, StorageBackend, dish_prefix
from app.utils.exceptions import NotFoundError, ValidationError
from app.utils.response import success_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/dishes", tags=["dishes"])


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.post("", status_code=201)
async def create_dish(payload: DishCreate):
    if not payload.name.strip():
        raise ValidationError("name is required")

    async with async_session() as db:
        dish_id = payload.id or str(uuid_mod.uuid4())

        # Idempotent create
        existing = await db.get(Dish, dish_id)
        if existing:
            return success_response(data=DishResponse.model_validate(existing).model_dump())

        dish = Dish(
            id=dish_id,
            restaurant_id=payload.restaurant_id,
            name=payload.name,
            description=payload.description or None,
            price=payload.price,
            model_status="pending",
            progress=0,
            version=0,
            created_at=_now(),
        )
        db.add(dish)
        await db.commit()
        await db.refresh(dish, ["photos"])
        data = DishResponse.model_validate(dish).model_dump()
    return success_response(data=data)


@router.get("")
async def list_dishes(restaurant_id: str | None = None):
    async with async_session() as db:
        query = select(Dish).order_by(Dish.created_at.desc())
        if restaurant_id:
            query = query.where(Dish.restaurant_id == restaurant_id)
        result = await db.execute(query)
        data = [DishResponse.model_validate(d).model_dump() for d in result.scalars().all()]
    return success_response(data=data)


@router.get("/{dish_id}")
async def get_dish(dish_id: str):
    async with async_session() as db:
        dish = await db.get(Dish, dish_id)
        if not dish:
            raise NotFoundError("Dish not found")
        data = DishResponse.model_validate(dish).model_dump()
    return success_response(data=data)


@router.post("/{dish_id}/photos", status_code=201)
async def attach_photos(dish_id: str, payload: PhotoAttach):
    """Register photos already uploaded to storage, in the given order."""
    if not payload.photo_urls:
        raise ValidationError("photo_urls must not be empty")

    async with async_session() as db:
        dish = await db.get(Dish, dish_id)
        if not dish:
            raise NotFoundError("Dish not found")

        result = await db.execute(
            select(func.max(DishPhoto.sort_order)).where(DishPhoto.dish_id == dish_id)
        )
        last = result.scalar()
        start = 0 if last is None else last + 1

        for i, url in enumerate(payload.photo_urls):
            db.add(DishPhoto(
                id=str(uuid_mod.uuid4()),
                dish_id=dish_id,
                photo_url=url,
                sort_order=start + i,
                created_at=_now(),
            ))
        await db.commit()
        await db.refresh(dish, ["photos"])
        data = DishResponse.model_validate(dish).model_dump()
    return success_response(data=data)


@router.delete("/{dish_id}")
async def delete_dish(dish_id: str, storage: StorageBackend = Depends(get_storage)):
    async with async_session() as db:
        dish = await db.get(Dish, dish_id)
        if not dish:
            raise NotFoundError("Dish not found")

        prefix = dish_prefix(dish.restaurant_id, dish.id)
        # Best-effort: a storage hiccup must not keep the dish alive
        for bucket in (BUCKET_PHOTOS, BUCKET_MODELS):
            try:
                names = await storage.list_files(bucket, prefix)
                await storage.remove(bucket, [f"{prefix}/{name}" for name in names])
            except Exception:
                logger.exception("Storage cleanup failed for dish %s in %s", dish_id, bucket)

        await db.delete(dish)
        await db.commit()
    return success_response(data={"ok": True})
