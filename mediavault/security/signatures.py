"""
Content-based file classification.

Detection looks only at leading bytes. The client-declared MIME type is used
solely to break ties between containers that legitimately hold more than one
kind of media; it never decides a category on its own.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Final

import aiofiles

from mediavault.domain.rules import Category

HEAD_BYTES: Final = 4096

PNG_MAGIC: Final = b"\x89PNG\r\n\x1a\n"
JPEG_SOI: Final = b"\xff\xd8\xff"
GIF_MAGICS: Final = (b"GIF87a", b"GIF89a")
PDF_MAGIC: Final = b"%PDF-"
EBML_MAGIC: Final = b"\x1a\x45\xdf\xa3"
OGG_MAGIC: Final = b"OggS"
FLAC_MAGIC: Final = b"fLaC"
ID3_MAGIC: Final = b"ID3"
ZIP_MAGIC: Final = b"PK\x03\x04"

# ftyp brands that are unambiguous about their content.
_QUICKTIME_BRANDS: Final = {b"qt  "}
_AUDIO_BRANDS: Final = {b"M4A ", b"M4B ", b"M4P ", b"F4A "}
# Generic ISO brands used both for audio-only and video files.
_GENERIC_BRANDS: Final = {b"isom", b"iso2", b"mp41", b"mp42", b"dash"}

OCTET_STREAM: Final = "application/octet-stream"


@dataclass(frozen=True, slots=True)
class Detection:
    """Outcome of signature sniffing."""

    category: Category
    mime: str
    extension: str | None = None

    @property
    def known(self) -> bool:
        return self.category is not Category.UNKNOWN


UNKNOWN: Final = Detection(Category.UNKNOWN, OCTET_STREAM)


def _declared_prefix(declared_mime: str | None) -> str:
    return (declared_mime or "").split("/", 1)[0].strip().lower()


def _sniff_ftyp(head: bytes, declared_mime: str | None) -> Detection:
    brand = head[8:12]
    if brand in _QUICKTIME_BRANDS:
        return Detection(Category.VIDEO, "video/quicktime", "mov")
    if brand in _AUDIO_BRANDS:
        return Detection(Category.AUDIO, "audio/mp4", "m4a")
    if brand in _GENERIC_BRANDS and _declared_prefix(declared_mime) == "audio":
        return Detection(Category.AUDIO, "audio/mp4", "m4a")
    return Detection(Category.VIDEO, "video/mp4", "mp4")


def _sniff_riff(head: bytes) -> Detection:
    form = head[8:12]
    if form == b"WEBP":
        return Detection(Category.IMAGE, "image/webp", "webp")
    if form == b"WAVE":
        return Detection(Category.AUDIO, "audio/wav", "wav")
    if form == b"AVI ":
        return Detection(Category.VIDEO, "video/x-msvideo", "avi")
    return UNKNOWN


def _sniff_ogg(head: bytes, declared_mime: str | None) -> Detection:
    if b"\x80theora" in head or _declared_prefix(declared_mime) == "video":
        return Detection(Category.VIDEO, "video/ogg", "ogv")
    return Detection(Category.AUDIO, "audio/ogg", "ogg")


def _is_mpeg_audio_frame(head: bytes) -> bool:
    # 11-bit frame sync, MPEG version not reserved, layer III.
    if len(head) < 2 or head[0] != 0xFF or (head[1] & 0xE0) != 0xE0:
        return False
    version = (head[1] >> 3) & 0x03
    layer = (head[1] >> 1) & 0x03
    return version != 0x01 and layer == 0x01


def _sniff_text(head: bytes, complete: bool) -> Detection:
    if b"\x00" in head:
        return UNKNOWN
    try:
        text = head.decode("utf-8")
    except UnicodeDecodeError as exc:
        # A multi-byte character may be cut at the head boundary.
        if complete or exc.start < len(head) - 3:
            return UNKNOWN
        text = head[: exc.start].decode("utf-8")
    stripped = text.lstrip("\ufeff \t\r\n")
    if not stripped:
        return UNKNOWN
    if stripped[0] in "{[":
        if not complete:
            return Detection(Category.OTHER, "application/json", "json")
        try:
            json.loads(stripped)
        except ValueError:
            return Detection(Category.OTHER, "text/plain", "txt")
        return Detection(Category.OTHER, "application/json", "json")
    if any(ord(ch) < 0x20 and ch not in "\t\r\n\f" for ch in stripped):
        return UNKNOWN
    return Detection(Category.OTHER, "text/plain", "txt")


def detect(head: bytes, declared_mime: str | None = None, *, complete: bool = False) -> Detection:
    """
    Classify `head`, the leading bytes of a file.

    `complete` tells the text sniffer that `head` is the whole file, which
    allows full JSON validation.
    """
    if head.startswith(PNG_MAGIC):
        return Detection(Category.IMAGE, "image/png", "png")
    if head.startswith(JPEG_SOI):
        return Detection(Category.IMAGE, "image/jpeg", "jpg")
    if head.startswith(GIF_MAGICS):
        return Detection(Category.IMAGE, "image/gif", "gif")
    if head.startswith(b"RIFF") and len(head) >= 12:
        riff = _sniff_riff(head)
        if riff.known:
            return riff
    if head.startswith(PDF_MAGIC):
        return Detection(Category.DOCUMENT, "application/pdf", "pdf")
    if len(head) >= 12 and head[4:8] == b"ftyp":
        return _sniff_ftyp(head, declared_mime)
    if head.startswith(EBML_MAGIC):
        if b"webm" in head[:64]:
            return Detection(Category.VIDEO, "video/webm", "webm")
        return Detection(Category.VIDEO, "video/x-matroska", "mkv")
    if head.startswith(OGG_MAGIC):
        return _sniff_ogg(head, declared_mime)
    if head.startswith(FLAC_MAGIC):
        return Detection(Category.AUDIO, "audio/flac", "flac")
    if head.startswith(ID3_MAGIC) or _is_mpeg_audio_frame(head):
        return Detection(Category.AUDIO, "audio/mpeg", "mp3")
    if head.startswith(ZIP_MAGIC):
        return Detection(Category.OTHER, "application/zip", "zip")
    return _sniff_text(head, complete)


async def read_head(path: str | os.PathLike[str], size: int = HEAD_BYTES) -> bytes:
    async with aiofiles.open(path, "rb") as fh:
        return await fh.read(size)


async def classify_file(
    path: str | os.PathLike[str], declared_mime: str | None = None, *, file_size: int | None = None
) -> Detection:
    """Read the head of `path` and classify it."""
    head = await read_head(path)
    complete = file_size is not None and file_size <= len(head)
    return detect(head, declared_mime, complete=complete)
