"""
Local artifact store for generated images and GLB meshes.

Artifacts live in two physically separate namespaces under one uploads
root so that a ``.png`` and a ``.glb`` can never collide::

    <uploads_dir>/images/<prefix>-<epoch_ms>-<random>.<ext>
    <uploads_dir>/glb/<prefix>-<epoch_ms>-<random>.glb

``save`` returns a public locator (the URL the uploads directory is served
under), which is what asset records carry.  ``read`` / ``delete`` accept the
same locators back; anything that does not point into one of the two
namespaces is treated as foreign and left alone.
"""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from urllib.parse import urlparse

from .files import ensure_dir, safe_extension, unique_filename

logger = logging.getLogger(__name__)


class ArtifactKind(str, Enum):
    image = "image"
    mesh = "mesh"


_NAMESPACES: dict[ArtifactKind, str] = {
    ArtifactKind.image: "images",
    ArtifactKind.mesh: "glb",
}


class ArtifactStorageError(RuntimeError):
    """Raised when artifact bytes cannot be written to disk."""


class ArtifactStore:
    def __init__(self, uploads_dir: Path, public_base_url: str, mount_path: str = "/uploads"):
        self.uploads_dir = uploads_dir
        self.public_base_url = public_base_url.rstrip("/")
        self.mount_path = "/" + mount_path.strip("/")

    def namespace_dir(self, kind: ArtifactKind) -> Path:
        return self.uploads_dir / _NAMESPACES[kind]

    def ensure_layout(self) -> None:
        for kind in ArtifactKind:
            ensure_dir(self.namespace_dir(kind))

    def locator_for(self, kind: ArtifactKind, filename: str) -> str:
        return f"{self.public_base_url}{self.mount_path}/{_NAMESPACES[kind]}/{filename}"

    def save(self, data: bytes, kind: ArtifactKind, ext: str | None = None, prefix: str = "artifact") -> str:
        if kind == ArtifactKind.mesh:
            extension = "glb"
        else:
            extension = safe_extension(ext, "png")

        filename = unique_filename(prefix, extension)
        dest = self.namespace_dir(kind) / filename
        try:
            ensure_dir(dest.parent)
            dest.write_bytes(data)
        except OSError as exc:
            raise ArtifactStorageError(f"Could not write {kind.value} artifact {filename}: {exc}") from exc

        logger.info("Saved %s artifact: %s (%d bytes)", kind.value, dest, len(data))
        return self.locator_for(kind, filename)

    def path_for(self, locator: str | None) -> Path | None:
        """Map a locator back to a file inside one of the namespaces."""
        if not locator:
            return None
        path = urlparse(locator).path
        for kind, namespace in _NAMESPACES.items():
            marker = f"{self.mount_path}/{namespace}/"
            if not path.startswith(marker):
                continue
            filename = path[len(marker):]
            if not filename or "/" in filename or filename in {".", ".."}:
                return None
            return self.namespace_dir(kind) / filename
        return None

    def read(self, locator: str | None) -> bytes | None:
        path = self.path_for(locator)
        if path is None or not path.is_file():
            return None
        return path.read_bytes()

    def delete(self, locator: str | None) -> bool:
        path = self.path_for(locator)
        if path is None:
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.warning("Could not delete artifact %s: %s", path, exc)
            return False
        logger.info("Deleted artifact: %s", path)
        return True
