from sqlalchemy import Column, Float, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from app.database import Base

MODEL_STATUSES = ("pending", "processing", "succeeded", "failed")


class Dish(Base):
    __tablename__ = "dishes"

    id = Column(String, primary_key=True)
    restaurant_id = Column(String, nullable=True, index=True)
    name = Column(String, nullable=False)
    description = Column(String, nullable=True)
    price = Column(Float, nullable=True)
    model_status = Column(String, nullable=False, default="pending")
    job_id = Column(String, nullable=True, index=True)
    progress = Column(Integer, nullable=False, default=0)
    # bumped on every status transition, compared on write
    version = Column(Integer, nullable=False, default=0)
    model_url = Column(String, nullable=True)
    companion_model_url = Column(String, nullable=True)
    poster_url = Column(String, nullable=True)
    created_at = Column(String, nullable=False)

    photos = relationship(
        "DishPhoto",
        order_by="DishPhoto.sort_order",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class DishPhoto(Base):
    __tablename__ = "dish_photos"

    id = Column(String, primary_key=True)
    dish_id = Column(String, ForeignKey("dishes.id", ondelete="CASCADE"), nullable=False, index=True)
    photo_url = Column(String, nullable=False)
    sort_order = Column(Integer, nullable=False)
    created_at = Column(String, nullable=False)
