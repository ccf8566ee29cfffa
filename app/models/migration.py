from sqlalchemy import Column, Float, ForeignKey, String, UniqueConstraint

from app.database import Base


class MigrationTask(Base):
    __tablename__ = "migration_tasks"
    __table_args__ = (UniqueConstraint("dish_id", "job_id", name="uq_migration_dish_job"),)

    id = Column(String, primary_key=True)
    dish_id = Column(String, ForeignKey("dishes.id", ondelete="CASCADE"), nullable=False, index=True)
    job_id = Column(String, nullable=False)
    status = Column(String, nullable=False, default="queued")
    scale_factor = Column(Float, nullable=True)
    error = Column(String, nullable=True)
    created_at = Column(String, nullable=False)
    finished_at = Column(String, nullable=True)
