from app.models.dish import Dish, DishPhoto
from app.models.migration import MigrationTask

__all__ = ["Dish", "DishPhoto", "MigrationTask"]
