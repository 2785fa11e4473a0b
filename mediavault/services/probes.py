"""
Structural probes.

A probe reads dimensions, page count or duration from a staged file. Each
one reports whether it can run on this host; the policy enforcer records a
skipped check instead of guessing when it cannot.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import shutil
import warnings
from dataclasses import dataclass
from typing import Protocol

from PIL import Image, UnidentifiedImageError

from mediavault.domain.errors import ProbeError
from mediavault.domain.rules import Category

logger = logging.getLogger(__name__)

PROBE_TIMEOUT_SECONDS = 20.0
_PAGES_RE = re.compile(r"^Pages:\s+(\d+)\s*$", re.MULTILINE)


@dataclass(frozen=True, slots=True)
class StructuralMetadata:
    width: int | None = None
    height: int | None = None
    pages: int | None = None
    duration: float | None = None

    def observed(self, kind: str) -> float | None:
        return getattr(self, kind, None)


class StructuralProbe(Protocol):
    categories: frozenset[Category]

    def available(self) -> bool: ...

    async def probe(self, path: str | os.PathLike[str]) -> StructuralMetadata: ...


async def _run(argv: list[str], timeout: float = PROBE_TIMEOUT_SECONDS) -> str:
    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise ProbeError(f"{argv[0]} timed out") from None
    if proc.returncode != 0:
        message = stderr.decode("utf-8", "replace").strip()[:200]
        raise ProbeError(f"{argv[0]} exited with {proc.returncode}: {message}")
    return stdout.decode("utf-8", "replace")


class ImageProbe:
    """Pixel dimensions via Pillow; only the header is decoded."""

    categories = frozenset({Category.IMAGE})

    def available(self) -> bool:
        return True

    @staticmethod
    def _read_size(path: str) -> tuple[int, int]:
        with warnings.catch_warnings():
            warnings.simplefilter("error", Image.DecompressionBombWarning)
            with Image.open(path) as image:
                return image.size

    async def probe(self, path: str | os.PathLike[str]) -> StructuralMetadata:
        try:
            width, height = await asyncio.to_thread(self._read_size, os.fspath(path))
        except (
            UnidentifiedImageError,
            Image.DecompressionBombError,
            Image.DecompressionBombWarning,
            OSError,
        ) as exc:
            raise ProbeError(f"image header unreadable: {exc}") from exc
        return StructuralMetadata(width=width, height=height)


class PdfProbe:
    """Page count via the poppler `pdfinfo` binary."""

    categories = frozenset({Category.DOCUMENT})

    def __init__(self, binary: str = "pdfinfo"):
        self.executable = shutil.which(binary)

    def available(self) -> bool:
        return self.executable is not None

    async def probe(self, path: str | os.PathLike[str]) -> StructuralMetadata:
        if self.executable is None:
            raise ProbeError("pdfinfo is not installed")
        output = await _run([self.executable, os.fspath(path)])
        match = _PAGES_RE.search(output)
        if match is None:
            raise ProbeError("pdfinfo reported no page count")
        return StructuralMetadata(pages=int(match.group(1)))


class MediaProbe:
    """Duration and frame size via `ffprobe`."""

    categories = frozenset({Category.AUDIO, Category.VIDEO})

    def __init__(self, binary: str = "ffprobe"):
        self.executable = shutil.which(binary)

    def available(self) -> bool:
        return self.executable is not None

    async def probe(self, path: str | os.PathLike[str]) -> StructuralMetadata:
        if self.executable is None:
            raise ProbeError("ffprobe is not installed")
        output = await _run(
            [
                self.executable,
                "-v",
                "quiet",
                "-print_format",
                "json",
                "-show_format",
                "-show_streams",
                os.fspath(path),
            ]
        )
        try:
            info = json.loads(output)
        except ValueError as exc:
            raise ProbeError("ffprobe returned invalid JSON") from exc
        return parse_ffprobe(info)


def parse_ffprobe(info: dict) -> StructuralMetadata:
    """Extract duration and the first video stream's size from ffprobe JSON."""
    duration = None
    raw_duration = (info.get("format") or {}).get("duration")
    if raw_duration not in (None, "N/A"):
        try:
            duration = float(raw_duration)
        except (TypeError, ValueError):
            duration = None
    width = height = None
    for stream in info.get("streams") or []:
        if stream.get("codec_type") == "video" and stream.get("width"):
            width, height = int(stream["width"]), int(stream["height"])
            break
    if duration is None and width is None:
        raise ProbeError("ffprobe found no media streams")
    return StructuralMetadata(width=width, height=height, duration=duration)


def default_probes() -> list[StructuralProbe]:
    probes: list[StructuralProbe] = [ImageProbe(), PdfProbe(), MediaProbe()]
    for probe in probes:
        if not probe.available():
            logger.warning(
                "Structural probe %s unavailable; checks for %s will be skipped",
                type(probe).__name__,
                ", ".join(sorted(c.value for c in probe.categories)),
            )
    return probes
