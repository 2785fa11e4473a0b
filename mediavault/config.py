"""
Runtime configuration.

`StorageSettings` is built once at startup and handed to every component;
nothing below reads the process environment after that.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from mediavault.domain.rules import (
    MIB,
    Category,
    ClassificationRule,
    audio_rule,
    document_rule,
    image_rule,
    other_rule,
    video_rule,
)

logger = logging.getLogger(__name__)

DEFAULT_ENABLED = "image,video,audio,document"


def _load_int_env(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
        if value <= 0:
            raise ValueError
        return value
    except ValueError:
        logger.warning("Invalid value '%s' for %s. Falling back to %s.", raw, name, default)
        return default


def _load_bool_env(environ: Mapping[str, str], name: str, default: bool) -> bool:
    raw = environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _parse_categories(raw: str) -> frozenset[Category]:
    enabled = set()
    for token in raw.split(","):
        token = token.strip().lower()
        if not token:
            continue
        try:
            category = Category(token)
        except ValueError:
            logger.warning("Unknown media type '%s' in ENABLED_MEDIA_TYPES ignored", token)
            continue
        if category is not Category.UNKNOWN:
            enabled.add(category)
    return frozenset(enabled)


def _parse_origins(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ("http://localhost:3000", "http://localhost:8080")
    return tuple(origin.strip() for origin in raw.split(",") if origin.strip())

def build_rules(
    environ: Mapping[str, str], enabled: frozenset[Category]
) -> dict[Category, ClassificationRule]:
    """Build the rule table for enabled categories from `MAX_*` variables."""
    env = environ
    candidates: dict[Category, ClassificationRule] = {
        Category.IMAGE: image_rule(
            max_bytes=_load_int_env(env, "MAX_IMAGE_BYTES", 5 * MIB),
            max_width=_load_int_env(env, "MAX_IMAGE_WIDTH", 8000),
            max_height=_load_int_env(env, "MAX_IMAGE_HEIGHT", 10000),
        ),
        Category.VIDEO: video_rule(
            max_bytes=_load_int_env(env, "MAX_VIDEO_BYTES", 150 * MIB),
            max_duration=_load_int_env(env, "MAX_VIDEO_DURATION", 1800),
            max_width=_load_int_env(env, "MAX_VIDEO_WIDTH", 3840),
            max_height=_load_int_env(env, "MAX_VIDEO_HEIGHT", 2160),
        ),
        Category.AUDIO: audio_rule(
            max_bytes=_load_int_env(env, "MAX_AUDIO_BYTES", 20 * MIB),
            max_duration=_load_int_env(env, "MAX_AUDIO_DURATION", 600),
        ),
        Category.DOCUMENT: document_rule(
            max_bytes=_load_int_env(env, "MAX_DOCUMENT_BYTES", 200 * MIB),
            max_pages=_load_int_env(env, "MAX_DOCUMENT_PAGES", 200),
        ),
        Category.OTHER: other_rule(max_bytes=_load_int_env(env, "MAX_OTHER_BYTES", 2 * MIB)),
    }
    return {category: rule for category, rule in candidates.items() if category in enabled}


@dataclass(frozen=True, slots=True)
class StorageSettings:
    """Immutable settings shared by the storage pipeline and the HTTP layer."""

    storage_path: Path
    public_base_url: str = "http://localhost:8000/media"
    temp_ttl_seconds: int = 3600
    sweep_interval_seconds: int = 300
    upload_limit_bytes: int = 500 * MIB
    max_files_per_batch: int = 200
    max_concurrent_probes: int = 8
    rules: Mapping[Category, ClassificationRule] = field(
        default_factory=lambda: build_rules({}, _parse_categories(DEFAULT_ENABLED))
    )
    image_processing: bool = False
    image_max_width: int = 2000
    internal_api_key: str | None = None
    api_key_pepper: str = ""
    log_level: str = "INFO"
    cors_origins: tuple[str, ...] = ("http://localhost:3000", "http://localhost:8080")
    production: bool = False

    @property
    def temp_root(self) -> Path:
        return self.storage_path / "temp"

    @property
    def final_root(self) -> Path:
        return self.storage_path / "media"

    def public_url(self, storage_path: str) -> str:
        """Build the public URL for a posix storage path."""
        cleaned = storage_path.replace("\\", "/").lstrip("/")
        return f"{self.public_base_url.rstrip('/')}/{cleaned}"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "StorageSettings":
        env = os.environ if environ is None else environ
        storage_path = Path(env.get("HOST_STORAGE_PATH") or "./data").expanduser().resolve()
        enabled = _parse_categories(env.get("ENABLED_MEDIA_TYPES") or DEFAULT_ENABLED)
        pepper = env.get("API_KEY_PEPPER", "")
        if not pepper:
            logger.warning("API_KEY_PEPPER is not set; stored API key hashes are unpeppered")
        if not env.get("INTERNAL_API_KEY"):
            logger.warning("INTERNAL_API_KEY is not set; only issued API keys will be accepted")
        return cls(
            storage_path=storage_path,
            public_base_url=env.get("PUBLIC_BASE_URL") or "http://localhost:8000/media",
            temp_ttl_seconds=_load_int_env(env, "TEMP_TTL", 3600),
            sweep_interval_seconds=_load_int_env(env, "TEMP_SWEEP_INTERVAL", 300),
            upload_limit_bytes=_load_int_env(env, "UPLOAD_LIMIT_BYTES", 500 * MIB),
            max_files_per_batch=_load_int_env(env, "MAX_TOTAL_FILES", 200),
            max_concurrent_probes=_load_int_env(env, "MAX_CONCURRENT_PROBES", 8),
            rules=build_rules(env, enabled),
            image_processing=_load_bool_env(env, "IMAGE_PROCESSING", False),
            image_max_width=_load_int_env(env, "IMAGE_MAX_WIDTH", 2000),
            internal_api_key=env.get("INTERNAL_API_KEY") or None,
            api_key_pepper=pepper,
            log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
            cors_origins=_parse_origins(env.get("CORS_ORIGINS")),
            production=(env.get("APP_ENV") or "development").lower() == "production",
        )
