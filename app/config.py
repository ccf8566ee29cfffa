from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./data/db.sqlite3"
    api_key: str = ""  # empty = no auth check (local dev)
    log_level: str = "INFO"
    data_dir: str = "./data"
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:8000"]

    # Mesh generation service
    meshy_api_key: str = ""
    meshy_base_url: str = "https://api.meshy.ai"
    meshy_ai_model: str = "meshy-6"
    meshy_target_polycount: int = 30000
    meshy_enable_pbr: bool = True
    http_timeout_seconds: float = 30.0
    public_base_url: str = ""  # used for the webhook callback and local media URLs

    # Durable storage: "local" or "supabase"
    storage_backend: str = "local"
    supabase_url: str = ""
    supabase_service_role_key: str = ""

    min_photos: int = 2
    max_photos: int = 4
    target_size_meters: float = 0.3  # typical dinner plate diameter
    poll_interval_seconds: float = 3.0

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
