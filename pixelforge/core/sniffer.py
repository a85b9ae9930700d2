"""
Magic-byte format detection.

Declared content types (upload headers, data URI MIME types, URL
extensions) are never trusted for routing; the leading bytes decide.
"""

from __future__ import annotations

from enum import Enum

MIN_SIGNATURE_LENGTH = 12

PNG_SIGNATURE = b"\x89PNG"
JPEG_SIGNATURE = b"\xff\xd8"
GLB_SIGNATURE = b"glTF"


class FormatKind(str, Enum):
    png = "png"
    jpeg = "jpeg"
    webp = "webp"
    glb = "glb"
    unknown = "unknown"


_IMAGE_KINDS = {FormatKind.png, FormatKind.jpeg, FormatKind.webp}

_MIME = {
    FormatKind.png: "image/png",
    FormatKind.jpeg: "image/jpeg",
    FormatKind.webp: "image/webp",
    FormatKind.glb: "model/gltf-binary",
    FormatKind.unknown: "application/octet-stream",
}

_EXT = {
    FormatKind.png: "png",
    FormatKind.jpeg: "jpg",
    FormatKind.webp: "webp",
    FormatKind.glb: "glb",
    FormatKind.unknown: "bin",
}


def classify(data: bytes | bytearray | memoryview | None) -> FormatKind:
    if not data or len(data) < MIN_SIGNATURE_LENGTH:
        return FormatKind.unknown
    head = bytes(data[:MIN_SIGNATURE_LENGTH])
    if head.startswith(PNG_SIGNATURE):
        return FormatKind.png
    if head.startswith(JPEG_SIGNATURE):
        return FormatKind.jpeg
    if head[:4] == b"RIFF" and head[8:12] == b"WEBP":
        return FormatKind.webp
    if head.startswith(GLB_SIGNATURE):
        return FormatKind.glb
    return FormatKind.unknown


def is_image(kind: FormatKind) -> bool:
    return kind in _IMAGE_KINDS


def has_glb_header(data: bytes | None) -> bool:
    return bool(data) and bytes(data[:4]) == GLB_SIGNATURE


def mime_for(kind: FormatKind) -> str:
    return _MIME[kind]


def extension_for(kind: FormatKind) -> str:
    return _EXT[kind]
