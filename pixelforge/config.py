from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


SERVICE_ROOT = Path(__file__).resolve().parents[1]

load_dotenv(SERVICE_ROOT / ".env", override=False)


def _default_concurrency() -> int:
    cpu = os.cpu_count() or 2
    return max(1, min(4, cpu // 2 if cpu > 2 else 1))


class ForgeSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="FORGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    service_name: str = "pixelforge-service"
    host: str = "0.0.0.0"
    port: int = 5000
    log_level: str = "INFO"

    # Remote segmentation / 3D generation service (Gradio-style /run/<api>)
    generation_service_url: str = "http://127.0.0.1:7860"
    remote_timeout_seconds: float = Field(default=600.0, ge=5.0, le=3600.0)
    seed_timeout_seconds: float = Field(default=30.0, ge=1.0, le=600.0)
    fetch_timeout_seconds: float = Field(default=120.0, ge=1.0, le=1800.0)

    # Storage
    storage_dir: Path = Field(default_factory=lambda: SERVICE_ROOT / "data")
    uploads_subdir: str = "uploads"
    users_subdir: str = "users"
    public_base_url: str = "http://localhost:5000"
    uploads_mount_path: str = "/uploads"

    # Upload limits
    max_image_upload_bytes: int = Field(default=10 * 1024 * 1024, ge=1024)
    max_glb_upload_bytes: int = Field(default=200 * 1024 * 1024, ge=1024)

    # Generation defaults
    default_num_steps: int = Field(default=50, ge=1, le=500)
    default_cfg_scale: float = Field(default=7.0, ge=0.0, le=50.0)
    default_grid_res: int = Field(default=384, ge=32, le=2048)
    default_target_num_faces: int = Field(default=100000, ge=100, le=5_000_000)
    convert_webp: bool = True

    # Concurrency
    max_concurrent_jobs: int = Field(default_factory=_default_concurrency, ge=1, le=32)
    max_queue_size: int = Field(default=64, ge=1, le=10000)

    # Job lifecycle
    finished_job_ttl_seconds: int = Field(default=3600, ge=60, le=172800)
    cleanup_interval_seconds: int = Field(default=30, ge=1, le=3600)
    max_job_records: int = Field(default=2000, ge=10, le=200000)

    # Observability
    max_pipeline_events: int = Field(default=500, ge=10, le=100000)

    # Auth
    api_key: str | None = None

    @field_validator("public_base_url", "generation_service_url", mode="after")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def uploads_dir(self) -> Path:
        return self.storage_dir / self.uploads_subdir

    @property
    def users_dir(self) -> Path:
        return self.storage_dir / self.users_subdir


settings = ForgeSettings()
