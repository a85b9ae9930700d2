"""
Image -> segmented image -> GLB generation pipeline.

Two phases per upload:

  Phase 1 (``begin``, awaited by the upload request)
    1. Persist the uploaded image and create a ``pending`` asset record
    2. Call /process_image; normalise + persist the segmented image
    3. Record ``meta.segmentedImage`` and build the reply

  Phase 2 (``complete``, run by the background job manager)
    4. Resolve the seed (/get_random_seed, falls back to supplied seed or 0)
    5. Pick the source image (segmented if it sniffs as an image, else the
       original upload, else give up quietly)
    6. WebP -> PNG when possible
    7. Call /process_3d; normalise + persist the GLB
    8. Re-read the record and mark it ``ready`` with ``glbUrl``

Remote failures never abort the reply: a missing segmented image just means
``segmentedImageUrl`` is null, and a failed mesh stage leaves the record
where it was.  The monitor is the only place those failures show up.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import PurePath
from typing import TYPE_CHECKING, Any

from pixelforge_shared.artifact_store import ArtifactKind, ArtifactStore
from pixelforge_shared.files import safe_extension

from ..config import ForgeSettings
from ..schemas import SEED_MAX, AssetRecord, AssetStatus, GenerationParams, MeshOutcome, UploadAccepted
from .imaging import webp_to_png
from .monitor import PipelineMonitor
from .normalizer import ResponseNormalizer, Stage, unwrap_envelope
from .records import AssetNotFoundError, AssetRecordManager
from .remote import GenerationService, RemoteTimeoutError
from .sniffer import FormatKind, classify, extension_for, has_glb_header, is_image

if TYPE_CHECKING:
    from ..job_manager import GenerationJobManager

logger = logging.getLogger(__name__)


class InputValidationError(ValueError):
    """Rejected before any pipeline work starts."""


@dataclass
class MeshTask:
    user_id: str
    asset_id: str
    image_locator: str
    segmented_locator: str | None
    params: GenerationParams


@dataclass
class SourceImage:
    data: bytes
    kind: FormatKind
    origin: str


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def coerce_seed(value: Any) -> int | None:
    """Accept ints and digit strings inside ``[0, 2**31 - 1]``."""
    if isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if isinstance(value, int) and 0 <= value <= SEED_MAX:
        return value
    return None


class GenerationOrchestrator:
    def __init__(
        self,
        settings: ForgeSettings,
        store: ArtifactStore,
        records: AssetRecordManager,
        service: GenerationService,
        normalizer: ResponseNormalizer,
        monitor: PipelineMonitor,
        jobs: GenerationJobManager | None = None,
    ):
        self.settings = settings
        self.store = store
        self.records = records
        self.service = service
        self.normalizer = normalizer
        self.monitor = monitor
        self.jobs = jobs

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def handle_upload(
        self,
        user_id: str,
        image: bytes | None,
        filename: str | None,
        params: GenerationParams,
    ) -> UploadAccepted:
        reply, task = await self.begin(user_id, image, filename, params)

        if self.jobs is None:
            logger.error("No job manager configured; mesh generation skipped for %s", task.asset_id)
            self.monitor.record("queue_full", task.asset_id, reason="no job manager")
            return reply

        try:
            job = await self.jobs.submit(task, self.complete)
        except RuntimeError as exc:
            logger.error("Could not queue mesh generation for %s: %s", task.asset_id, exc)
            self.monitor.record("queue_full", task.asset_id, error=str(exc))
        else:
            reply.job_id = job.id
            logger.info("Queued mesh job %s for asset %s", job.id, task.asset_id)
        return reply

    # ------------------------------------------------------------------
    # Phase 1
    # ------------------------------------------------------------------

    async def begin(
        self,
        user_id: str,
        image: bytes | None,
        filename: str | None,
        params: GenerationParams,
    ) -> tuple[UploadAccepted, MeshTask]:
        if not image:
            raise InputValidationError("No image file provided")

        sniffed = classify(image)
        fallback_ext = extension_for(sniffed) if is_image(sniffed) else "png"
        ext = safe_extension(PurePath(filename or "").suffix, fallback_ext)

        image_locator = self.store.save(image, ArtifactKind.image, ext=ext, prefix="upload")
        record = await self.records.create_asset(user_id, image_locator, meta={"seed": params.seed})
        asset_id = record.id
        logger.info("[STEP 1] asset %s created (%d bytes, %s)", asset_id, len(image), sniffed.value)

        segmented_locator = await self._segment(user_id, asset_id, image)

        reply = UploadAccepted(
            asset_id=asset_id,
            image_url=image_locator,
            segmented_image_url=segmented_locator,
            seed=params.seed,
        )
        task = MeshTask(
            user_id=user_id,
            asset_id=asset_id,
            image_locator=image_locator,
            segmented_locator=segmented_locator,
            params=params,
        )
        return reply, task

    async def _segment(self, user_id: str, asset_id: str, image: bytes) -> str | None:
        logger.info("[STEP 2] calling /process_image for asset %s", asset_id)
        try:
            raw = await self.service.segment(image)
        except RemoteTimeoutError as exc:
            logger.error("Segmentation timed out for %s: %s", asset_id, exc)
            self.monitor.record("remote_timeout", asset_id, stage=Stage.segmentation.value, error=str(exc))
            return None
        except Exception as exc:
            logger.error("Segmentation failed for %s: %s", asset_id, exc)
            self.monitor.record("segmentation_failed", asset_id, error=str(exc)[:200])
            return None

        output = await self.normalizer.normalize(raw, Stage.segmentation, asset_id)
        if not output.produced:
            if output.diagnostic_locator:
                await self._update(user_id, asset_id, {"meta": {"segmentation_diagnostic": output.diagnostic_locator}})
            else:
                self.monitor.record("segmentation_failed", asset_id, variant=output.variant.value)
            return None

        locator = self.store.save(output.data, ArtifactKind.image, ext=output.ext, prefix="processed")
        if await self._update(user_id, asset_id, {"meta": {"segmented_image": locator}}) is None:
            self.store.delete(locator)
            return None
        logger.info("[STEP 3] segmented image for %s saved: %s", asset_id, locator)
        return locator

    # ------------------------------------------------------------------
    # Phase 2
    # ------------------------------------------------------------------

    async def complete(self, task: MeshTask) -> MeshOutcome:
        asset_id = task.asset_id
        seed = await self.resolve_seed(task.params, asset_id)
        outcome = MeshOutcome(asset_id=asset_id, seed=seed)

        source = self.select_source(task)
        if source is None:
            logger.error("Neither segmented nor original image is valid for %s; skipping 3D", asset_id)
            self.monitor.record("source_invalid", asset_id)
            outcome.aborted = "no valid source image"
            return outcome
        outcome.source = source.origin

        data = source.data
        if source.kind == FormatKind.webp and self.settings.convert_webp:
            try:
                data = await webp_to_png(data)
                logger.info("Converted WebP source to PNG for %s (%d bytes)", asset_id, len(data))
            except Exception as exc:
                logger.warning("WebP -> PNG conversion failed for %s; sending WebP as-is: %s", asset_id, exc)
                self.monitor.record("transcode_failed", asset_id, error=str(exc)[:200])

        params = task.params
        logger.info(
            "[STEP 4] calling /process_3d for %s seed=%s steps=%s grid=%s cfg=%s simplify=%s faces=%s",
            asset_id, seed, params.num_steps, params.grid_res, params.cfg_scale,
            params.simplify_mesh, params.target_num_faces,
        )
        try:
            raw = await self.service.generate_mesh(
                data,
                num_steps=params.num_steps,
                cfg_scale=params.cfg_scale,
                grid_res=params.grid_res,
                seed=seed,
                simplify_mesh=params.simplify_mesh,
                target_num_faces=params.target_num_faces,
            )
        except RemoteTimeoutError as exc:
            logger.error("Mesh generation timed out for %s: %s", asset_id, exc)
            self.monitor.record("remote_timeout", asset_id, stage=Stage.mesh.value, error=str(exc))
            outcome.aborted = "mesh generation timed out"
            return outcome
        except Exception as exc:
            logger.error("Mesh generation failed for %s: %s", asset_id, exc)
            self.monitor.record("mesh_failed", asset_id, error=str(exc)[:200])
            outcome.aborted = "mesh generation failed"
            return outcome

        output = await self.normalizer.normalize(raw, Stage.mesh, asset_id)
        if not output.produced:
            logger.warning("No GLB produced for %s", asset_id)
            self.monitor.record("mesh_missing", asset_id, variant=output.variant.value)
            if output.diagnostic_locator:
                outcome.diagnostic_url = output.diagnostic_locator
                await self._update(task.user_id, asset_id, {"meta": {"mesh_diagnostic": output.diagnostic_locator}})
            outcome.aborted = "no mesh artifact"
            return outcome

        outcome.glb_header_ok = has_glb_header(output.data)
        glb_locator = self.store.save(output.data, ArtifactKind.mesh, prefix="generated")
        if not outcome.glb_header_ok:
            self.monitor.record(
                "glb_header_missing",
                asset_id,
                locator=glb_locator,
                head=output.data[:4].hex(),
                size=len(output.data),
            )

        now = _utc_now()
        updated = await self._update(
            task.user_id,
            asset_id,
            {
                "glb_url": glb_locator,
                "status": AssetStatus.ready,
                "updated_at": now,
                "generated_at": now,
            },
        )
        if updated is None:
            self.store.delete(glb_locator)
            return outcome

        outcome.glb_url = glb_locator
        outcome.asset_updated = True
        logger.info("[STEP 5] asset %s ready: %s", asset_id, glb_locator)
        return outcome

    async def resolve_seed(self, params: GenerationParams, asset_id: str | None = None) -> int:
        supplied = params.seed
        if supplied is not None and not params.randomize_seed:
            return supplied

        try:
            raw = await self.service.resolve_seed(params.randomize_seed, supplied or 0)
        except Exception as exc:
            logger.warning("/get_random_seed failed for %s; using supplied seed: %s", asset_id, exc)
            self.monitor.record("seed_fallback", asset_id, error=str(exc)[:200])
            return supplied if supplied is not None else 0

        seed = coerce_seed(unwrap_envelope(raw))
        if seed is None:
            self.monitor.record("seed_fallback", asset_id, returned=repr(raw)[:100])
            return supplied if supplied is not None else 0
        return seed

    def select_source(self, task: MeshTask) -> SourceImage | None:
        segmented = self.store.read(task.segmented_locator)
        kind = classify(segmented)
        if segmented is not None and is_image(kind):
            return SourceImage(segmented, kind, "segmented")

        if task.segmented_locator:
            self.monitor.record("source_fallback", task.asset_id, segmented_kind=kind.value)

        original = self.store.read(task.image_locator)
        kind = classify(original)
        if original is not None and is_image(kind):
            return SourceImage(original, kind, "original")
        return None

    async def _update(self, user_id: str, asset_id: str, fields: dict[str, Any]) -> AssetRecord | None:
        try:
            return await self.records.update_asset_meta(user_id, asset_id, fields)
        except AssetNotFoundError:
            logger.info("Asset %s was deleted before the pipeline finished", asset_id)
            self.monitor.record("asset_vanished", asset_id, fields=sorted(fields))
            return None
