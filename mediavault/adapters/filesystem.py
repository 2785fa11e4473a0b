"""
Filesystem adapter: atomic writes, hashing and directory helpers.

All blocking calls go through `aiofiles` or a worker thread so the event
loop keeps serving requests while large files are written or hashed.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import secrets
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Final

import aiofiles
import aiofiles.os

from mediavault.domain.errors import InvalidPathError, NotFound, StorageError

logger = logging.getLogger(__name__)

HASH_CHUNK_BYTES: Final = 1024 * 1024
TMP_PREFIX: Final = "."
TMP_MARKER: Final = ".tmp-"


@dataclass(frozen=True, slots=True)
class DirEntry:
    """One child of a listed directory."""

    name: str
    path: Path
    is_dir: bool
    size: int
    modified_at: float


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


async def sha256_file(path: str | os.PathLike[str], chunk_size: int = HASH_CHUNK_BYTES) -> str:
    """Stream `path` through SHA-256 without loading it whole."""
    digest = hashlib.sha256()
    async with aiofiles.open(path, "rb") as fh:
        while True:
            chunk = await fh.read(chunk_size)
            if not chunk:
                break
            digest.update(chunk)
    return digest.hexdigest()


def assert_no_symlink_parents(root: str | os.PathLike[str], path: str | os.PathLike[str]) -> None:
    """Refuse paths whose ancestor chain inside `root` contains a symlink."""
    root_path = Path(root)
    target = Path(path)
    if root_path.is_symlink():
        raise StorageError("Storage root must not be a symlink", code="symlink_parent", status=500)
    for parent in target.parents:
        if parent == root_path or len(parent.parts) <= len(root_path.parts):
            break
        if parent.is_symlink():
            raise StorageError(
                "Storage directory contains symlinks", code="symlink_parent", status=400
            )
    if target.is_symlink():
        raise StorageError("Target path is a symlink", code="symlink_parent", status=400)


def _discard(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Could not remove temporary file %s: %s", path, exc)


async def write_atomic(target: str | os.PathLike[str], data: bytes) -> None:
    """
    Write `data` to `target` via a sibling temp file and a rename.

    Readers see either the previous file or the complete new one. The parent
    directory is created when missing.
    """
    target_str = os.fspath(target)
    parent = os.path.dirname(target_str)
    await aiofiles.os.makedirs(parent, exist_ok=True)
    # Sanitized names never start with a dot, so temp files cannot shadow one.
    tmp_name = f"{TMP_PREFIX}{os.path.basename(target_str)}{TMP_MARKER}{secrets.token_hex(6)}"
    tmp_path = os.path.join(parent, tmp_name)
    try:
        async with aiofiles.open(tmp_path, "xb") as fh:
            await fh.write(data)
            await fh.flush()
            await asyncio.to_thread(os.fsync, fh.fileno())
        await aiofiles.os.replace(tmp_path, target_str)
    finally:
        # No-op after a successful rename.
        _discard(tmp_path)


async def read_bytes(path: str | os.PathLike[str]) -> bytes:
    async with aiofiles.open(path, "rb") as fh:
        return await fh.read()


async def path_exists(path: str | os.PathLike[str]) -> bool:
    return await aiofiles.os.path.exists(path)


async def stat_path(path: str | os.PathLike[str]) -> os.stat_result:
    return await aiofiles.os.stat(path)


async def is_dir(path: str | os.PathLike[str]) -> bool:
    return await aiofiles.os.path.isdir(path)


async def remove_tree(path: str | os.PathLike[str]) -> bool:
    """
    Remove a file or directory tree. Returns False when nothing was there.

    Removing something that vanished concurrently is not an error.
    """
    try:
        if await aiofiles.os.path.isdir(path) and not await aiofiles.os.path.islink(path):
            await asyncio.to_thread(shutil.rmtree, path)
        else:
            await aiofiles.os.remove(path)
    except FileNotFoundError:
        return False
    return True


def is_temp_name(name: str) -> bool:
    return name.startswith(TMP_PREFIX) and TMP_MARKER in name


def _scan(path: str) -> list[DirEntry]:
    entries = []
    with os.scandir(path) as it:
        for item in it:
            if is_temp_name(item.name):
                continue
            try:
                stat = item.stat(follow_symlinks=False)
            except FileNotFoundError:
                continue
            entries.append(
                DirEntry(
                    name=item.name,
                    path=Path(item.path),
                    is_dir=item.is_dir(follow_symlinks=False),
                    size=stat.st_size,
                    modified_at=stat.st_mtime,
                )
            )
    entries.sort(key=lambda entry: entry.name)
    return entries


async def list_dir(path: str | os.PathLike[str]) -> list[DirEntry]:
    """List a directory sorted by name, hiding in-flight atomic-write temp files."""
    path_str = os.fspath(path)
    if not await aiofiles.os.path.exists(path_str):
        raise NotFound("Directory not found")
    if not await aiofiles.os.path.isdir(path_str):
        raise InvalidPathError("Path is not a directory")
    return await asyncio.to_thread(_scan, path_str)
