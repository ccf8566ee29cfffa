from pydantic import BaseModel


class DishCreate(BaseModel):
    name: str
    restaurant_id: str | None = None
    description: str | None = None
    price: float | None = None
    id: str | None = None


class PhotoAttach(BaseModel):
    photo_urls: list[str]


class PhotoResponse(BaseModel):
    id: str
    photo_url: str
    sort_order: int

    model_config = {"from_attributes": True}


class DishResponse(BaseModel):
    id: str
    restaurant_id: str | None = None
    name: str
    description: str | None = None
    price: float | None = None
    model_status: str
    job_id: str | None = None
    progress: int
    model_url: str | None = None
    companion_model_url: str | None = None
    poster_url: str | None = None
    created_at: str
    photos: list[PhotoResponse] = []

    model_config = {"from_attributes": True}
