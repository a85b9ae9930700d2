from __future__ import annotations

import re
import secrets
import time
from pathlib import Path


_SAFE_NAME_RE = re.compile(r"[^a-zA-Z0-9._-]+")
_SAFE_EXT_RE = re.compile(r"[^a-z0-9]+")


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def safe_name(name: str, fallback: str = "file") -> str:
    value = _SAFE_NAME_RE.sub("_", (name or "").strip()).strip("._")
    return value or fallback


def safe_extension(ext: str | None, fallback: str) -> str:
    value = _SAFE_EXT_RE.sub("", (ext or "").lower().lstrip("."))
    return value[:8] or fallback


def unique_filename(prefix: str, ext: str) -> str:
    """``<prefix>-<epoch ms>-<random>.<ext>``; collisions need no locking."""
    stamp = int(time.time() * 1000)
    suffix = secrets.randbelow(1_000_000_000)
    return f"{safe_name(prefix, 'artifact')}-{stamp}-{suffix}.{ext}"
