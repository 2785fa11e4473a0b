"""
Post-commit processing hooks.

A hook reads a validated temp file and writes its output to the proposed
destination it is given. Returning None means "keep the raw bytes"; raising
does the same, with a warning logged by the caller.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Protocol

from PIL import Image, ImageOps

from mediavault.domain.rules import Category

logger = logging.getLogger(__name__)

# extension -> (Pillow format, mime)
OUTPUT_FORMATS: dict[str, tuple[str, str]] = {
    "webp": ("WEBP", "image/webp"),
    "png": ("PNG", "image/png"),
    "jpg": ("JPEG", "image/jpeg"),
    "jpeg": ("JPEG", "image/jpeg"),
    "gif": ("GIF", "image/gif"),
}


@dataclass(frozen=True, slots=True)
class HookContext:
    session_id: str
    temp_index: int
    category: Category
    mime: str
    storage_path: str


@dataclass(slots=True)
class HookResult:
    mime: str | None = None
    width: int | None = None
    height: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class ProcessingHook(Protocol):
    async def __call__(
        self,
        source: str | os.PathLike[str],
        proposed_dest: str | os.PathLike[str],
        filename: str,
        context: HookContext,
    ) -> HookResult | None: ...


class ImageProcessor:
    """Scale images down to `max_width` and re-encode by target extension."""

    def __init__(self, max_width: int = 2000, quality: int = 85):
        self.max_width = max_width
        self.quality = quality

    async def __call__(self, source, proposed_dest, filename, context):
        if context.category is not Category.IMAGE:
            return None
        _, _, ext = filename.rpartition(".")
        target = OUTPUT_FORMATS.get(ext.lower())
        if target is None:
            return None
        fmt, mime = target
        return await asyncio.to_thread(
            self._process, os.fspath(source), os.fspath(proposed_dest), fmt, mime
        )

    def _process(self, source: str, dest: str, fmt: str, mime: str) -> HookResult | None:
        with Image.open(source) as original:
            if getattr(original, "is_animated", False):
                return None
            original_size = original.size
            image = ImageOps.exif_transpose(original)
        if image.width > self.max_width:
            height = max(1, round(image.height * self.max_width / image.width))
            image = image.resize((self.max_width, height), Image.Resampling.LANCZOS)
        if fmt == "JPEG" and image.mode not in ("RGB", "L"):
            image = image.convert("RGB")
        image.save(dest, format=fmt, quality=self.quality)
        logger.debug("Processed image %s -> %s (%sx%s)", source, fmt, image.width, image.height)
        return HookResult(
            mime=mime,
            width=image.width,
            height=image.height,
            metadata={
                "processed": True,
                "format": fmt.lower(),
                "original_width": original_size[0],
                "original_height": original_size[1],
            },
        )
