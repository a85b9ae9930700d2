from __future__ import annotations

import base64
import io
from typing import Any

from PIL import Image

from pixelforge.config import ForgeSettings
from pixelforge.core.monitor import PipelineMonitor
from pixelforge.core.normalizer import ResponseNormalizer
from pixelforge.core.orchestrator import GenerationOrchestrator
from pixelforge.core.records import JsonAssetRecordStore
from pixelforge_shared.artifact_store import ArtifactStore

GLB_BYTES = b"glTF" + b"\x02\x00\x00\x00" + b"\x40\x00\x00\x00" + b"\x00" * 52


def make_image(fmt: str = "PNG", size: tuple[int, int] = (8, 8)) -> bytes:
    mode = "RGB" if fmt == "JPEG" else "RGBA"
    color = (200, 40, 40) if mode == "RGB" else (200, 40, 40, 255)
    out = io.BytesIO()
    Image.new(mode, size, color).save(out, format=fmt)
    return out.getvalue()


def data_uri(data: bytes, mime: str) -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


class FakeGenerationService:
    """Scripted stand-in for the remote Gradio service."""

    def __init__(
        self,
        segment_result: Any = None,
        seed_result: Any = 1234,
        mesh_result: Any = None,
        segment_error: Exception | None = None,
        seed_error: Exception | None = None,
        mesh_error: Exception | None = None,
    ):
        self.segment_result = segment_result
        self.seed_result = seed_result
        self.mesh_result = mesh_result
        self.segment_error = segment_error
        self.seed_error = seed_error
        self.mesh_error = mesh_error
        self.segment_calls: list[bytes] = []
        self.seed_calls: list[tuple[bool, int]] = []
        self.mesh_calls: list[dict[str, Any]] = []

    async def segment(self, image: bytes) -> Any:
        self.segment_calls.append(image)
        if self.segment_error:
            raise self.segment_error
        return self.segment_result

    async def resolve_seed(self, randomize: bool, seed: int) -> Any:
        self.seed_calls.append((randomize, seed))
        if self.seed_error:
            raise self.seed_error
        return self.seed_result

    async def generate_mesh(self, image: bytes, **params: Any) -> Any:
        self.mesh_calls.append({"image": image, **params})
        if self.mesh_error:
            raise self.mesh_error
        return self.mesh_result


def build_orchestrator(
    settings: ForgeSettings,
    store: ArtifactStore,
    records: JsonAssetRecordStore,
    monitor: PipelineMonitor,
    service: FakeGenerationService,
    transport: Any = None,
) -> GenerationOrchestrator:
    normalizer = ResponseNormalizer(store, monitor, transport=transport)
    return GenerationOrchestrator(settings, store, records, service, normalizer, monitor)
