"""
Normalise raw generation-service output into artifact bytes.

The remote service does not commit to one output shape.  Depending on the
Gradio version and endpoint it hands back any of:

1. ``data:<mime>;base64,<payload>``  -- decoded inline
2. ``http(s)://...`` string          -- downloaded
3. bare base64 string                -- decoded (alphabet check + length > 100)
4. file reference object             -- ``{url|link|path|file: ...}``; absolute
                                        URLs are downloaded, server-local
                                        paths cannot be reached from here
5. raw bytes                         -- always kept for meshes; for images
                                        only when the magic bytes are known

Everything else is written out as a diagnostic artifact so failures stay
inspectable.  ``normalize`` never raises for an unexpected shape; only a
storage failure while writing a diagnostic escapes.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import PurePosixPath
from typing import Any
from urllib.parse import urlparse

import httpx

from pixelforge_shared.artifact_store import ArtifactKind, ArtifactStore

from .monitor import PipelineMonitor
from .sniffer import FormatKind, classify, extension_for

logger = logging.getLogger(__name__)

MIN_BARE_BASE64_LENGTH = 100

_DATA_URI_RE = re.compile(r"^data:([^;,]+)(?:;[^;,]*)*;base64,(.+)$", re.DOTALL)
_BASE64_RE = re.compile(r"^[A-Za-z0-9+/=]+$")
_WHITESPACE_RE = re.compile(r"\s+")
_REFERENCE_KEYS = ("url", "link", "path", "file")


class Stage(str, Enum):
    segmentation = "segmentation"
    mesh = "mesh"

    @property
    def default_ext(self) -> str:
        return "png" if self == Stage.segmentation else "glb"


class PayloadVariant(str, Enum):
    data_uri = "data_uri"
    url = "url"
    base64 = "base64"
    reference = "reference"
    binary = "binary"
    unrecognized = "unrecognized"


@dataclass(frozen=True)
class ParsedPayload:
    variant: PayloadVariant
    raw: Any
    mime: str | None = None
    url: str | None = None
    encoded: str | None = None


@dataclass(frozen=True)
class NormalizedOutput:
    variant: PayloadVariant
    data: bytes | None = None
    ext: str | None = None
    source_url: str | None = None
    diagnostic_locator: str | None = None

    @property
    def produced(self) -> bool:
        return self.data is not None


def _is_absolute_url(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(("http://", "https://"))


def unwrap_envelope(raw: Any) -> Any:
    """Gradio answers ``{"data": [out, ...]}``; only ``out`` matters."""
    if isinstance(raw, dict) and isinstance(raw.get("data"), list):
        raw = raw["data"]
    if isinstance(raw, (list, tuple)):
        return raw[0] if raw else None
    return raw


def parse_payload(raw: Any) -> ParsedPayload:
    raw = unwrap_envelope(raw)

    if isinstance(raw, str):
        if raw.startswith("data:"):
            match = _DATA_URI_RE.match(raw.strip())
            if match:
                return ParsedPayload(PayloadVariant.data_uri, raw, mime=match.group(1), encoded=match.group(2))
            return ParsedPayload(PayloadVariant.unrecognized, raw)
        if _is_absolute_url(raw):
            return ParsedPayload(PayloadVariant.url, raw, url=raw)
        compact = _WHITESPACE_RE.sub("", raw)
        if len(compact) > MIN_BARE_BASE64_LENGTH and _BASE64_RE.match(compact):
            return ParsedPayload(PayloadVariant.base64, raw, encoded=compact)
        return ParsedPayload(PayloadVariant.unrecognized, raw)

    if isinstance(raw, (bytes, bytearray, memoryview)):
        return ParsedPayload(PayloadVariant.binary, bytes(raw))

    if isinstance(raw, dict):
        candidate = next((raw[k] for k in _REFERENCE_KEYS if raw.get(k)), None)
        if candidate is not None:
            return ParsedPayload(
                PayloadVariant.reference,
                raw,
                url=candidate if _is_absolute_url(candidate) else None,
            )

    return ParsedPayload(PayloadVariant.unrecognized, raw)


def extension_from_mime(mime: str | None, fallback: str) -> str:
    """``image/svg+xml`` -> ``svg``; ``model/gltf-binary`` -> ``gltf-binary``."""
    if not mime or "/" not in mime:
        return fallback
    subtype = mime.split("/", 1)[1].split("+", 1)[0].strip()
    return subtype or fallback


def extension_from_url(url: str, fallback: str) -> str:
    suffix = PurePosixPath(urlparse(url).path).suffix.lstrip(".")
    return suffix or fallback


def _decode_base64(encoded: str) -> bytes | None:
    try:
        return base64.b64decode(_WHITESPACE_RE.sub("", encoded), validate=True)
    except (binascii.Error, ValueError):
        return None


def _diagnostic_bytes(raw: Any) -> bytes:
    if isinstance(raw, (bytes, bytearray, memoryview)):
        return bytes(raw)
    if isinstance(raw, str):
        return raw.encode("utf-8")
    return json.dumps(raw if raw is not None else {}, default=str).encode("utf-8")


class ResponseNormalizer:
    def __init__(
        self,
        store: ArtifactStore,
        monitor: PipelineMonitor | None = None,
        fetch_timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.store = store
        self.monitor = monitor or PipelineMonitor()
        self.fetch_timeout = fetch_timeout
        self.transport = transport

    async def normalize(self, raw: Any, stage: Stage, asset_id: str | None = None) -> NormalizedOutput:
        parsed = parse_payload(raw)
        variant = parsed.variant

        if variant == PayloadVariant.data_uri:
            data = _decode_base64(parsed.encoded or "")
            if data is None:
                return self._diagnostic(parsed, stage, asset_id, "invalid base64 in data URI")
            return NormalizedOutput(variant, data=data, ext=extension_from_mime(parsed.mime, stage.default_ext))

        if variant == PayloadVariant.url:
            return await self._fetch(parsed, stage, asset_id)

        if variant == PayloadVariant.base64:
            data = _decode_base64(parsed.encoded or "")
            if data is None:
                return self._diagnostic(parsed, stage, asset_id, "undecodable base64")
            return NormalizedOutput(variant, data=data, ext=stage.default_ext)

        if variant == PayloadVariant.reference:
            if parsed.url:
                return await self._fetch(parsed, stage, asset_id)
            logger.warning("%s output is a server-local reference: %s", stage.value, parsed.raw)
            return self._diagnostic(parsed, stage, asset_id, "unreachable file reference")

        if variant == PayloadVariant.binary:
            if stage == Stage.mesh:
                return NormalizedOutput(variant, data=parsed.raw, ext=stage.default_ext)
            kind = classify(parsed.raw)
            if kind != FormatKind.unknown:
                return NormalizedOutput(variant, data=parsed.raw, ext=extension_for(kind))
            return self._diagnostic(parsed, stage, asset_id, "binary payload with unknown signature")

        return self._diagnostic(parsed, stage, asset_id, f"unrecognized {type(parsed.raw).__name__} output")

    async def _fetch(self, parsed: ParsedPayload, stage: Stage, asset_id: str | None) -> NormalizedOutput:
        url = parsed.url or ""
        logger.info("Downloading %s output: %s", stage.value, url[:120])
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.fetch_timeout),
                transport=self.transport,
                follow_redirects=True,
            ) as client:
                resp = await client.get(url)
                resp.raise_for_status()
                data = resp.content
        except httpx.HTTPError as exc:
            logger.warning("Could not fetch %s output from %s: %s", stage.value, url[:120], exc)
            self.monitor.record("fetch_failed", asset_id, stage=stage.value, url=url[:200], error=str(exc)[:200])
            return NormalizedOutput(parsed.variant, source_url=url)

        logger.info("Downloaded %s output: %d bytes", stage.value, len(data))
        return NormalizedOutput(
            parsed.variant,
            data=data,
            ext=extension_from_url(url, stage.default_ext),
            source_url=url,
        )

    def _diagnostic(self, parsed: ParsedPayload, stage: Stage, asset_id: str | None, reason: str) -> NormalizedOutput:
        payload = _diagnostic_bytes(parsed.raw)
        ext = "bin" if parsed.variant == PayloadVariant.binary else "txt"
        locator = self.store.save(payload, ArtifactKind.image, ext=ext, prefix=f"diagnostic-{stage.value}")
        self.monitor.record(
            "diagnostic_saved",
            asset_id,
            stage=stage.value,
            variant=parsed.variant.value,
            reason=reason,
            locator=locator,
        )
        return NormalizedOutput(parsed.variant, diagnostic_locator=locator)
