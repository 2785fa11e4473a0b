"""
Classification rules for uploaded media.

Every category carries its own rule type, so structural limits live next to
the category they apply to instead of behind string-keyed lookups.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass


class Category(str, enum.Enum):
    """Media categories detected from file content."""

    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    OTHER = "other"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class ClassificationRule:
    """Static acceptance rule for one category."""

    category: Category
    mime_types: frozenset[str]
    extensions: re.Pattern[str]
    max_bytes: int

    def structural_limits(self) -> dict[str, float]:
        """Return `{kind: limit}` for checks that need decoding the file."""
        return {}


@dataclass(frozen=True, slots=True)
class ImageRule(ClassificationRule):
    max_width: int
    max_height: int

    def structural_limits(self) -> dict[str, float]:
        return {"width": self.max_width, "height": self.max_height}


@dataclass(frozen=True, slots=True)
class VideoRule(ClassificationRule):
    max_duration: float
    max_width: int
    max_height: int

    def structural_limits(self) -> dict[str, float]:
        return {
            "duration": self.max_duration,
            "width": self.max_width,
            "height": self.max_height,
        }


@dataclass(frozen=True, slots=True)
class AudioRule(ClassificationRule):
    max_duration: float

    def structural_limits(self) -> dict[str, float]:
        return {"duration": self.max_duration}


@dataclass(frozen=True, slots=True)
class DocumentRule(ClassificationRule):
    max_pages: int

    def structural_limits(self) -> dict[str, float]:
        return {"pages": self.max_pages}


@dataclass(frozen=True, slots=True)
class OtherRule(ClassificationRule):
    pass


MIB = 1024 * 1024


def image_rule(max_bytes: int = 5 * MIB, max_width: int = 8000, max_height: int = 10000) -> ImageRule:
    return ImageRule(
        category=Category.IMAGE,
        mime_types=frozenset({"image/jpeg", "image/png", "image/webp", "image/gif"}),
        extensions=re.compile(r"\.(jpe?g|png|webp|gif)$", re.IGNORECASE),
        max_bytes=max_bytes,
        max_width=max_width,
        max_height=max_height,
    )


def video_rule(
    max_bytes: int = 150 * MIB,
    max_duration: float = 1800,
    max_width: int = 3840,
    max_height: int = 2160,
) -> VideoRule:
    return VideoRule(
        category=Category.VIDEO,
        mime_types=frozenset(
            {"video/mp4", "video/webm", "video/quicktime", "video/x-matroska", "video/x-msvideo", "video/ogg"}
        ),
        extensions=re.compile(r"\.(mp4|webm|mov|mkv|avi|ogv)$", re.IGNORECASE),
        max_bytes=max_bytes,
        max_duration=max_duration,
        max_width=max_width,
        max_height=max_height,
    )


def audio_rule(max_bytes: int = 20 * MIB, max_duration: float = 600) -> AudioRule:
    return AudioRule(
        category=Category.AUDIO,
        mime_types=frozenset({"audio/mpeg", "audio/wav", "audio/ogg", "audio/flac", "audio/mp4"}),
        extensions=re.compile(r"\.(mp3|wav|ogg|oga|flac|m4a)$", re.IGNORECASE),
        max_bytes=max_bytes,
        max_duration=max_duration,
    )


def document_rule(max_bytes: int = 200 * MIB, max_pages: int = 200) -> DocumentRule:
    return DocumentRule(
        category=Category.DOCUMENT,
        mime_types=frozenset({"application/pdf"}),
        extensions=re.compile(r"\.pdf$", re.IGNORECASE),
        max_bytes=max_bytes,
        max_pages=max_pages,
    )


def other_rule(max_bytes: int = 2 * MIB) -> OtherRule:
    return OtherRule(
        category=Category.OTHER,
        mime_types=frozenset({"application/json", "text/plain", "application/zip"}),
        extensions=re.compile(r"\.(json|txt|zip)$", re.IGNORECASE),
        max_bytes=max_bytes,
    )
