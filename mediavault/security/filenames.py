"""Filename sanitization and synthetic name generation."""

from __future__ import annotations

import re
import secrets
import time
from typing import Final

MAX_FILENAME_LENGTH: Final = 200
FILLER: Final = "_"

# 48 random bits per name. Even at 10k names per millisecond bucket the
# birthday bound stays near 1.8e-7; at realistic rates it is ~1e-13.
RANDOM_BYTES: Final = 6

_WHITESPACE = re.compile(r"\s+")
_UNSAFE = re.compile(r"[^a-zA-Z0-9\-_.]")
_FILLER_RUN = re.compile(r"_{2,}")
_FILLER_AROUND_DOT = re.compile(r"_*\._*")


def _clean(name: str | None) -> str:
    if not name:
        return ""
    base = name.replace("\\", "/").rsplit("/", 1)[-1]
    cleaned = _WHITESPACE.sub(FILLER, base)
    cleaned = _UNSAFE.sub(FILLER, cleaned)
    cleaned = _FILLER_RUN.sub(FILLER, cleaned)
    cleaned = _FILLER_AROUND_DOT.sub(".", cleaned)
    return cleaned.strip("_.")


def _fit(name: str, budget: int) -> str:
    """Shorten a cleaned name to `budget` characters, keeping its extension."""
    if len(name) <= budget:
        return name
    stem, dot, ext = name.rpartition(".")
    if dot and stem and len(ext) + 2 <= budget:
        return stem[: budget - len(ext) - 1].rstrip("_.") + "." + ext
    return name[:budget].rstrip("_.")


def sanitize_filename(name: str | None) -> str:
    """
    Turn an arbitrary client filename into a filesystem-safe token.

    Directory components are dropped, whitespace and unsafe characters become
    `_`, filler runs collapse, and leading/trailing `_` or `.` are trimmed.
    The result is at most 200 characters, keeps its extension when it has
    to be shortened, and sanitizing it again is a no-op.
    """
    return _fit(_clean(name), MAX_FILENAME_LENGTH)


def generate_unique_name(original_name: str | None, *, now_ms: int | None = None) -> str:
    """
    Build `<epoch-ms>-<12 hex>-<sanitized name>` bounded to 200 characters.

    The sanitized original (or `file`) keeps its extension when the name
    has to be shortened.
    """
    stamp = now_ms if now_ms is not None else time.time_ns() // 1_000_000
    prefix = f"{stamp}-{secrets.token_hex(RANDOM_BYTES)}-"
    base = _clean(original_name) or "file"
    return prefix + (_fit(base, MAX_FILENAME_LENGTH - len(prefix)) or "file")
