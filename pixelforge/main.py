"""
PixelForge service: FastAPI entry point.

Endpoints:
  POST   /create/upload                 Upload an image, segment it, queue 3D generation
  GET    /assets                        List the caller's assets (newest first)
  GET    /assets/{id}                   One asset record (what clients poll)
  DELETE /assets/{id}                   Delete an asset and its artifacts
  POST   /assets/upload-image           Create a pending asset without generation
  POST   /assets/{id}/attach-glb        Attach a GLB file or URL, mark ready
  GET    /jobs/{id}                     Background mesh job status
  GET    /pipeline/events               Recent pipeline events (observability)
  GET    /health                        Service health check
  /uploads/...                          Stored images and GLBs

Callers identify themselves with ``X-User-Id``; authentication happens in
front of this service.
"""

from __future__ import annotations

import logging
import os
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import PurePath

from fastapi import FastAPI, File, Form, Header, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from pydantic import ValidationError

from pixelforge_shared.artifact_store import ArtifactKind, ArtifactStorageError, ArtifactStore
from pixelforge_shared.files import ensure_dir
from pixelforge_shared.logging import configure_logging

from .config import ForgeSettings, settings as default_settings
from .core.monitor import PipelineMonitor
from .core.normalizer import ResponseNormalizer
from .core.orchestrator import GenerationOrchestrator, InputValidationError
from .core.records import AssetNotFoundError, JsonAssetRecordStore
from .core.remote import GenerationService, GradioServiceClient
from .core.sniffer import has_glb_header
from .job_manager import GenerationJobManager
from .schemas import AssetRecord, AssetStatus, GenerationParams, JobRecordView, UploadAccepted

logger = logging.getLogger("pixelforge.main")

_ALLOWED_IMAGE_TYPES = re.compile(r"jpeg|jpg|png")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _asset_json(record: AssetRecord) -> dict:
    return record.model_dump(mode="json", by_alias=True)


def _check_image_upload(file: UploadFile | None) -> None:
    if file is None or not file.filename:
        raise HTTPException(status_code=400, detail="No image file provided")
    ext_ok = bool(_ALLOWED_IMAGE_TYPES.search(PurePath(file.filename).suffix.lower()))
    mime_ok = bool(_ALLOWED_IMAGE_TYPES.search(str(file.content_type or "")))
    if not (ext_ok and mime_ok):
        raise HTTPException(status_code=400, detail="Only .png, .jpg, and .jpeg files are allowed")


async def _read_limited(file: UploadFile, limit: int) -> bytes:
    data = await file.read(limit + 1)
    if len(data) > limit:
        raise HTTPException(status_code=413, detail=f"File too large (limit {limit} bytes)")
    return data


def create_app(
    settings: ForgeSettings | None = None,
    service: GenerationService | None = None,
) -> FastAPI:
    settings = settings or default_settings
    configure_logging(settings.log_level)

    monitor = PipelineMonitor(max_events=settings.max_pipeline_events)
    store = ArtifactStore(settings.uploads_dir, settings.public_base_url, settings.uploads_mount_path)
    records = JsonAssetRecordStore(settings.users_dir, store)
    jobs = GenerationJobManager(settings, monitor)
    service = service or GradioServiceClient(
        settings.generation_service_url,
        timeout_seconds=settings.remote_timeout_seconds,
        seed_timeout_seconds=settings.seed_timeout_seconds,
    )
    normalizer = ResponseNormalizer(store, monitor, fetch_timeout=settings.fetch_timeout_seconds)
    orchestrator = GenerationOrchestrator(settings, store, records, service, normalizer, monitor, jobs=jobs)

    # -----------------------------------------------------------------------
    # Auth helpers
    # -----------------------------------------------------------------------

    def _require_api_key(x_api_key: str | None) -> None:
        if settings.api_key and x_api_key != settings.api_key:
            raise HTTPException(status_code=401, detail="Invalid API key")

    def _require_user(x_user_id: str | None) -> str:
        if not x_user_id or not x_user_id.strip():
            raise HTTPException(status_code=401, detail="Authorization required")
        return x_user_id.strip()

    # -----------------------------------------------------------------------
    # Lifespan
    # -----------------------------------------------------------------------

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        store.ensure_layout()
        ensure_dir(settings.users_dir)
        await jobs.startup()
        yield
        await jobs.shutdown()

    app = FastAPI(
        title="PixelForge Service",
        version="1.0.0",
        description=(
            "Turns an uploaded 2D image into a 3D GLB asset. The image is segmented "
            "synchronously, the mesh is generated in the background, and clients poll "
            "the asset record until it is ready."
        ),
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.monitor = monitor
    app.state.store = store
    app.state.records = records
    app.state.jobs = jobs
    app.state.orchestrator = orchestrator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -----------------------------------------------------------------------
    # Health
    # -----------------------------------------------------------------------

    @app.get("/")
    async def root():
        return {
            "service": settings.service_name,
            "version": "1.0.0",
            "docs": "/docs",
            "health": "/health",
        }

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "service": settings.service_name,
            "queue_size": jobs.queue.qsize(),
            "active_jobs": jobs.active_count(),
            "max_concurrent_jobs": settings.max_concurrent_jobs,
            "pipeline_counters": dict(monitor.counters),
        }

    # -----------------------------------------------------------------------
    # POST /create/upload: segmentation now, mesh in the background
    # -----------------------------------------------------------------------

    @app.post("/create/upload", response_model=UploadAccepted, response_model_by_alias=True)
    async def create_upload(
        image: UploadFile | None = File(default=None),
        seed: str | None = Form(default=None),
        num_steps: int | None = Form(default=None),
        cfg_scale: float | None = Form(default=None),
        grid_res: int | None = Form(default=None),
        simplify_mesh: bool | None = Form(default=None),
        target_num_faces: int | None = Form(default=None),
        randomize_seed: bool | None = Form(default=None),
        x_user_id: str | None = Header(default=None),
        x_api_key: str | None = Header(default=None),
    ):
        _require_api_key(x_api_key)
        user_id = _require_user(x_user_id)
        _check_image_upload(image)
        data = await _read_limited(image, settings.max_image_upload_bytes)

        raw_params = {
            "seed": seed.strip() if seed and seed.strip() else None,
            "num_steps": num_steps if num_steps is not None else settings.default_num_steps,
            "cfg_scale": cfg_scale if cfg_scale is not None else settings.default_cfg_scale,
            "grid_res": grid_res if grid_res is not None else settings.default_grid_res,
            "simplify_mesh": bool(simplify_mesh),
            "target_num_faces": (
                target_num_faces if target_num_faces is not None else settings.default_target_num_faces
            ),
            "randomize_seed": bool(randomize_seed),
        }
        try:
            params = GenerationParams.model_validate(raw_params)
        except ValidationError as exc:
            raise HTTPException(status_code=422, detail=exc.errors(include_url=False, include_context=False))

        try:
            return await orchestrator.handle_upload(user_id, data, image.filename, params)
        except InputValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        except ArtifactStorageError as exc:
            logger.exception("Upload failed for user %s", user_id)
            raise HTTPException(status_code=500, detail=str(exc))

    # -----------------------------------------------------------------------
    # Asset collection
    # -----------------------------------------------------------------------

    @app.get("/assets")
    async def list_assets(
        x_user_id: str | None = Header(default=None),
        x_api_key: str | None = Header(default=None),
    ):
        _require_api_key(x_api_key)
        user_id = _require_user(x_user_id)
        assets = await records.list_assets(user_id)
        return {"userId": user_id, "assets": [_asset_json(a) for a in assets]}

    @app.post("/assets/upload-image", status_code=201)
    async def upload_image(
        image: UploadFile | None = File(default=None),
        x_user_id: str | None = Header(default=None),
        x_api_key: str | None = Header(default=None),
    ):
        _require_api_key(x_api_key)
        user_id = _require_user(x_user_id)
        _check_image_upload(image)
        data = await _read_limited(image, settings.max_image_upload_bytes)
        if not data:
            raise HTTPException(status_code=400, detail="No image uploaded")

        ext = PurePath(image.filename).suffix
        try:
            locator = store.save(data, ArtifactKind.image, ext=ext, prefix="upload")
        except ArtifactStorageError as exc:
            raise HTTPException(status_code=500, detail=str(exc))
        record = await records.create_asset(user_id, locator)
        return {"asset": _asset_json(record)}

    @app.get("/assets/{asset_id}")
    async def get_asset(
        asset_id: str,
        x_user_id: str | None = Header(default=None),
        x_api_key: str | None = Header(default=None),
    ):
        _require_api_key(x_api_key)
        user_id = _require_user(x_user_id)
        try:
            record = await records.get_asset(user_id, asset_id)
        except AssetNotFoundError:
            raise HTTPException(status_code=404, detail="Asset not found")
        return {"asset": _asset_json(record)}

    @app.post("/assets/{asset_id}/attach-glb")
    async def attach_glb(
        asset_id: str,
        glb: UploadFile | None = File(default=None),
        glb_url: str | None = Form(default=None, alias="glbUrl"),
        x_user_id: str | None = Header(default=None),
        x_api_key: str | None = Header(default=None),
    ):
        _require_api_key(x_api_key)
        user_id = _require_user(x_user_id)
        try:
            current = await records.get_asset(user_id, asset_id)
        except AssetNotFoundError:
            raise HTTPException(status_code=404, detail="Asset not found")

        if glb is not None and glb.filename:
            data = await _read_limited(glb, settings.max_glb_upload_bytes)
            try:
                locator = store.save(data, ArtifactKind.mesh, prefix="attached")
            except ArtifactStorageError as exc:
                raise HTTPException(status_code=500, detail=str(exc))
            if not has_glb_header(data):
                monitor.record("glb_header_missing", asset_id, locator=locator, head=data[:4].hex(), size=len(data))
        elif glb_url and glb_url.strip():
            locator = glb_url.strip()
        else:
            raise HTTPException(status_code=400, detail="No GLB file or URL provided")

        now = _utc_now()
        try:
            updated = await records.update_asset_meta(
                user_id,
                asset_id,
                {"glb_url": locator, "status": AssetStatus.ready, "updated_at": now, "generated_at": now},
            )
        except AssetNotFoundError:
            store.delete(locator)
            raise HTTPException(status_code=404, detail="Asset not found")

        if current.glb_url and current.glb_url != locator:
            store.delete(current.glb_url)
        return {"asset": _asset_json(updated)}

    @app.delete("/assets/{asset_id}")
    async def delete_asset(
        asset_id: str,
        x_user_id: str | None = Header(default=None),
        x_api_key: str | None = Header(default=None),
    ):
        _require_api_key(x_api_key)
        user_id = _require_user(x_user_id)
        if not await records.delete_asset(user_id, asset_id):
            raise HTTPException(status_code=404, detail="Asset not found")
        return {"success": True, "asset_id": asset_id}

    # -----------------------------------------------------------------------
    # Background jobs + pipeline events
    # -----------------------------------------------------------------------

    @app.get("/jobs/{job_id}", response_model=JobRecordView)
    async def get_job(job_id: str, x_api_key: str | None = Header(default=None)):
        _require_api_key(x_api_key)
        try:
            record = await jobs.get(job_id)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
        return record.as_view()

    @app.get("/pipeline/events")
    async def pipeline_events(
        kind: str | None = None,
        asset_id: str | None = None,
        limit: int = 100,
        x_api_key: str | None = Header(default=None),
    ):
        _require_api_key(x_api_key)
        events = monitor.recent(kind=kind, asset_id=asset_id, limit=max(1, min(limit, 1000)))
        return {
            "counters": dict(monitor.counters),
            "events": [e.as_view().model_dump(mode="json") for e in events],
        }

    # -----------------------------------------------------------------------
    # Stored artifacts
    # -----------------------------------------------------------------------

    app.mount(
        settings.uploads_mount_path,
        StaticFiles(directory=str(settings.uploads_dir), check_dir=False),
        name="uploads",
    )

    return app


app = create_app()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "pixelforge.main:app",
        host=default_settings.host,
        port=default_settings.port,
        log_level=default_settings.log_level.lower(),
        reload=bool(int(os.getenv("UVICORN_RELOAD", "0"))),
    )
