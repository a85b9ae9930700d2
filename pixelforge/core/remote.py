"""
Client for the remote segmentation / 3D generation service.

The service exposes three Gradio endpoints, each a single request/response
call (no streaming):

  /process_image    image -> segmented image (shape not fixed, see normalizer)
  /get_random_seed  (randomize_seed, seed) -> number or numeric string
  /process_3d       image + generation params -> GLB (shape not fixed)

Calls go through ``POST <base>/run/<api_name>`` with ``{"data": [...]}`` and
the first element of the returned ``data`` list is handed back raw.
"""

from __future__ import annotations

import base64
import logging
import time
from typing import Any, Protocol

import httpx

from .sniffer import classify, mime_for

logger = logging.getLogger(__name__)


class RemoteServiceError(RuntimeError):
    """Transport or protocol failure talking to the generation service."""


class RemoteTimeoutError(RemoteServiceError):
    """A remote stage exceeded its configured timeout."""


class GenerationService(Protocol):
    async def segment(self, image: bytes) -> Any: ...

    async def resolve_seed(self, randomize: bool, seed: int) -> Any: ...

    async def generate_mesh(
        self,
        image: bytes,
        num_steps: int,
        cfg_scale: float,
        grid_res: int,
        seed: int,
        simplify_mesh: bool,
        target_num_faces: int,
    ) -> Any: ...


def image_data_uri(image: bytes) -> str:
    mime = mime_for(classify(image))
    if not mime.startswith("image/"):
        mime = "image/png"
    return f"data:{mime};base64,{base64.b64encode(image).decode('ascii')}"


class GradioServiceClient:
    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 600.0,
        seed_timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.seed_timeout_seconds = seed_timeout_seconds
        self.transport = transport

    async def _predict(self, api_name: str, data: list[Any], timeout: float) -> Any:
        url = f"{self.base_url}/run/{api_name}"
        logger.info("Calling generation service %s", url)
        t0 = time.time()
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(timeout),
                transport=self.transport,
            ) as client:
                resp = await client.post(url, json={"data": data})
                resp.raise_for_status()
                body = resp.json()
        except httpx.TimeoutException as exc:
            raise RemoteTimeoutError(f"/{api_name} timed out after {timeout:.0f}s") from exc
        except httpx.HTTPError as exc:
            raise RemoteServiceError(f"/{api_name} failed: {exc}") from exc
        except ValueError as exc:
            raise RemoteServiceError(f"/{api_name} returned invalid JSON: {exc}") from exc

        logger.info("/%s responded in %.1fs", api_name, time.time() - t0)
        if not isinstance(body, dict) or "data" not in body:
            raise RemoteServiceError(f"/{api_name} response has no 'data' field")

        out = body["data"]
        if isinstance(out, list):
            return out[0] if out else None
        return out

    async def segment(self, image: bytes) -> Any:
        return await self._predict("process_image", [image_data_uri(image)], self.timeout_seconds)

    async def resolve_seed(self, randomize: bool, seed: int) -> Any:
        return await self._predict("get_random_seed", [bool(randomize), int(seed)], self.seed_timeout_seconds)

    async def generate_mesh(
        self,
        image: bytes,
        num_steps: int,
        cfg_scale: float,
        grid_res: int,
        seed: int,
        simplify_mesh: bool,
        target_num_faces: int,
    ) -> Any:
        return await self._predict(
            "process_3d",
            [
                image_data_uri(image),
                int(num_steps),
                float(cfg_scale),
                int(grid_res),
                int(seed),
                bool(simplify_mesh),
                int(target_num_faces),
            ],
            self.timeout_seconds,
        )
