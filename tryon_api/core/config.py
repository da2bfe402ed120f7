from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_CORS = ["http://localhost:3000", "http://localhost:5173"]


def _parse_cors_origins(v: Any) -> List[str]:
    try:
        if v is None or v == "":
            return _DEFAULT_CORS.copy()
        if isinstance(v, list):
            return [x for x in v if isinstance(x, str) and x.strip()]
        s = str(v).strip()
        if not s:
            return _DEFAULT_CORS.copy()
        if s.startswith("["):
            import json
            out = json.loads(s)
            return [x for x in out if isinstance(x, str) and x.strip()] or _DEFAULT_CORS.copy()
        return [x.strip() for x in s.split(",") if x.strip()] or _DEFAULT_CORS.copy()
    except ValueError:
        return _DEFAULT_CORS.copy()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")
    secret_key: str = Field(default="change-me-in-production-min-32-chars")

    # MongoDB
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="tryon", alias="MONGODB_DB_NAME")

    # Redis (ARQ dispatch backend)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # Black Forest Labs
    bfl_api_key: str = Field(default="", alias="BFL_API_KEY")
    bfl_base_url: str = Field(default="https://api.bfl.ai/v1", alias="BFL_BASE_URL")
    bfl_generate_endpoint: str = Field(default="flux-pro-1.1", alias="BFL_GENERATE_ENDPOINT")
    bfl_edit_endpoint: str = Field(default="flux-pro-1.1-edit", alias="BFL_EDIT_ENDPOINT")
    bfl_submit_timeout: float = 30.0
    bfl_poll_timeout: float = 30.0
    bfl_download_timeout: float = 120.0

    # Polling policy (seconds)
    poll_max_attempts: int = 30
    poll_initial_delay: float = 2.0
    poll_max_delay: float = 30.0
    poll_backoff_factor: float = 1.5

    # Background reconciliation: "local" (in-process tasks) or "arq" (Redis queue)
    dispatch_backend: str = Field(default="local", alias="DISPATCH_BACKEND")
    reaper_interval_seconds: int = 300
    reaper_stale_after_seconds: int = 2400
    reaper_max_dispatches: int = 3

    # Storage
    storage_backend: str = Field(default="local", alias="STORAGE_BACKEND")
    storage_local_path: str = Field(default="./uploads", alias="STORAGE_LOCAL_PATH")
    storage_public_prefix: str = "/uploads"
    gcs_bucket_name: str | None = Field(default=None, alias="GCS_BUCKET_NAME")

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # CORS: env as string, exposed as list
    cors_origins_raw: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )

    @property
    def cors_origins(self) -> List[str]:
        return _parse_cors_origins(getattr(self, "cors_origins_raw", None))

    # Pricing (credits)
    credits_per_model_generation: int = 5
    credits_per_tryon: int = 3
    credits_per_scene_generation: int = 2

    # Credit packages: id -> (credits, price)
    credit_packages: dict[str, tuple[int, float]] = {
        "basic": (10, 5.99),
        "standard": (25, 12.99),
        "premium": (60, 24.99),
    }


@lru_cache
def get_settings() -> Settings:
    return Settings()
