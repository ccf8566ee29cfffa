from pydantic import BaseModel

PENDING = "PENDING"
IN_PROGRESS = "IN_PROGRESS"
SUCCEEDED = "SUCCEEDED"
FAILED = "FAILED"
CANCELED = "CANCELED"

IN_FLIGHT_STATES = frozenset({PENDING, IN_PROGRESS})
FAILED_STATES = frozenset({FAILED, CANCELED})


class ModelUrls(BaseModel):
    glb: str | None = None
    usdz: str | None = None
    fbx: str | None = None
    obj: str | None = None
    mtl: str | None = None


class TaskError(BaseModel):
    message: str = ""


class JobStatus(BaseModel):
    """Status payload returned by polling and pushed by the webhook."""

    id: str
    status: str
    progress: int = 0
    model_urls: ModelUrls | None = None
    thumbnail_url: str | None = None
    expires_at: int | None = None
    task_error: TaskError | None = None


class AssetUrls(BaseModel):
    model_url: str | None = None
    companion_model_url: str | None = None
    poster_url: str | None = None

    @classmethod
    def from_job(cls, job: JobStatus) -> "AssetUrls":
        urls = job.model_urls or ModelUrls()
        return cls(model_url=urls.glb, companion_model_url=urls.usdz, poster_url=job.thumbnail_url)


class GenerateRequest(BaseModel):
    dish_id: str | None = None


class MigrationTaskResponse(BaseModel):
    id: str
    dish_id: str
    job_id: str
    status: str
    scale_factor: float | None = None
    error: str | None = None
    created_at: str
    finished_at: str | None = None

    model_config = {"from_attributes": True}
