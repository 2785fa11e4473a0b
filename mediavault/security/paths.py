"""
Path guard for storage roots.

Pure path arithmetic: nothing here touches the filesystem, so every check is
testable with made-up roots.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path, PurePosixPath
from urllib.parse import unquote

from mediavault.domain.errors import PathTraversalError

logger = logging.getLogger(__name__)


def _has_parent_segment(value: str) -> bool:
    return any(part == ".." for part in value.replace("\\", "/").split("/"))


def _root_prefix(root_abs: str) -> str:
    return root_abs if root_abs.endswith(os.sep) else root_abs + os.sep


def normalize_root(root: str | os.PathLike[str]) -> str:
    root_str = os.fspath(root)
    if not os.path.isabs(root_str):
        raise ValueError("storage root must be an absolute path")
    return os.path.normpath(root_str)


def is_within(root: str | os.PathLike[str], candidate: str | os.PathLike[str]) -> bool:
    """True when `candidate` equals `root` or is nested under it."""
    root_abs = normalize_root(root)
    cand = os.path.normpath(os.fspath(candidate))
    return cand == root_abs or cand.startswith(_root_prefix(root_abs))


def resolve(root: str | os.PathLike[str], relative: str) -> Path:
    """
    Resolve a user-supplied relative path against `root`.

    Backslashes count as separators on every host, leading slashes are
    dropped, and percent-encoded parent segments (`%2e%2e`) are refused
    outright. The result is `root` itself or a path strictly under it;
    anything else raises `PathTraversalError`.
    """
    root_abs = normalize_root(root)
    relative = relative or ""

    if "\x00" in relative:
        logger.warning("Rejected path with NUL byte under %s", root_abs)
        raise PathTraversalError()

    candidate = relative.replace("\\", "/")
    decoded = unquote(candidate)
    if decoded != candidate and (_has_parent_segment(decoded) or "\x00" in decoded):
        logger.warning("Rejected encoded traversal attempt %r under %s", relative, root_abs)
        raise PathTraversalError()

    parts = [part for part in candidate.split("/") if part]
    joined = os.path.normpath(os.path.join(root_abs, *parts)) if parts else root_abs

    if joined != root_abs and not joined.startswith(_root_prefix(root_abs)):
        logger.warning("Rejected traversal attempt %r under %s", relative, root_abs)
        raise PathTraversalError()
    return Path(joined)


def to_public_path(root: str | os.PathLike[str], absolute: str | os.PathLike[str]) -> str:
    """Convert an absolute path under `root` into its posix storage path."""
    root_abs = normalize_root(root)
    target = os.path.normpath(os.fspath(absolute))
    if not is_within(root_abs, target):
        raise PathTraversalError("Path is not under storage root")
    rel = os.path.relpath(target, root_abs)
    if rel == os.curdir:
        return ""
    return PurePosixPath(*rel.split(os.sep)).as_posix()


def join_public(*parts: str) -> str:
    """Join posix path fragments, ignoring empty pieces and stray slashes."""
    cleaned = [p.replace("\\", "/").strip("/") for p in parts if p]
    return "/".join(p for p in cleaned if p)
