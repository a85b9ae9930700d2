from __future__ import annotations

import asyncio
import io

from PIL import Image


def webp_to_png_sync(data: bytes) -> bytes:
    with Image.open(io.BytesIO(data)) as image:
        if image.mode not in ("RGB", "RGBA"):
            image = image.convert("RGBA")
        out = io.BytesIO()
        image.save(out, format="PNG")
    return out.getvalue()


async def webp_to_png(data: bytes) -> bytes:
    """Async wrapper: offloads the Pillow decode/encode to the thread-pool."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, webp_to_png_sync, data)
