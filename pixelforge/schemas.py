from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

SEED_MAX = 2**31 - 1


class AssetStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    ready = "ready"
    failed = "failed"


class GenerationJobStatus(str, Enum):
    queued = "queued"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"


class CamelModel(BaseModel):
    """Stored and served with camelCase keys (``imageUrl``, ``glbUrl``...)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Asset records
# ---------------------------------------------------------------------------

class AssetMeta(CamelModel):
    seed: int | None = None
    segmented_image: str | None = None
    uploaded_at: datetime | None = None
    segmentation_diagnostic: str | None = None
    mesh_diagnostic: str | None = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class AssetRecord(CamelModel):
    id: str
    image_url: str
    glb_url: str | None = None
    status: AssetStatus = AssetStatus.pending
    meta: AssetMeta = Field(default_factory=AssetMeta)
    created_at: datetime
    updated_at: datetime | None = None
    generated_at: datetime | None = None

    @model_validator(mode="after")
    def _glb_iff_ready(self) -> "AssetRecord":
        if (self.glb_url is not None) != (self.status == AssetStatus.ready):
            raise ValueError("glbUrl must be set exactly when status is 'ready'")
        return self

    def locators(self) -> list[str]:
        """Every artifact this record owns."""
        found = [
            self.image_url,
            self.glb_url,
            self.meta.segmented_image,
            self.meta.segmentation_diagnostic,
            self.meta.mesh_diagnostic,
        ]
        return [x for x in found if x]


# ---------------------------------------------------------------------------
# Generation request / reply
# ---------------------------------------------------------------------------

class GenerationParams(BaseModel):
    """Parameter bag forwarded to the remote 3D generation call."""

    seed: int | None = Field(default=None, ge=0, le=SEED_MAX)
    num_steps: int = Field(default=50, ge=1, le=500)
    cfg_scale: float = Field(default=7.0, ge=0.0, le=50.0)
    grid_res: int = Field(default=384, ge=32, le=2048)
    simplify_mesh: bool = False
    target_num_faces: int = Field(default=100000, ge=100, le=5_000_000)
    randomize_seed: bool = False

    model_config = ConfigDict(extra="ignore")


class UploadAccepted(CamelModel):
    message: str = "Image uploaded successfully"
    asset_id: str
    image_url: str
    segmented_image_url: str | None = None
    seed: int | None = None
    job_id: str | None = None


class MeshOutcome(BaseModel):
    """What a background mesh job produced (visible through /jobs)."""

    asset_id: str
    seed: int | None = None
    source: str | None = None
    glb_url: str | None = None
    glb_header_ok: bool | None = None
    diagnostic_url: str | None = None
    aborted: str | None = None
    asset_updated: bool = False


# ---------------------------------------------------------------------------
# Job / monitor views
# ---------------------------------------------------------------------------

class JobRecordView(BaseModel):
    id: str
    status: GenerationJobStatus
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    detail: str = ""

    request_summary: dict[str, Any] = Field(default_factory=dict)
    result: MeshOutcome | None = None
    error: dict[str, Any] | None = None


class PipelineEventView(BaseModel):
    kind: str
    at: datetime
    asset_id: str | None = None
    detail: dict[str, Any] = Field(default_factory=dict)
