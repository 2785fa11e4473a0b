"""
Commit orchestrator and final-storage operations.

Commit validates every mapping before the first byte lands in final storage.
After that each file is written on its own: a failure on one mapping is
reported next to the ones that succeeded, never rolled back.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from mediavault.adapters.filesystem import (
    assert_no_symlink_parents,
    is_dir,
    list_dir,
    path_exists,
    read_bytes,
    remove_tree,
    sha256_file,
    sha256_hex,
    stat_path,
    write_atomic,
)
from mediavault.config import StorageSettings
from mediavault.domain.errors import (
    DuplicateTarget,
    InvalidPathError,
    NotFound,
    ProcessingHookFailed,
    StorageError,
    TempEntryMissing,
)
from mediavault.domain.models import (
    CommitFailure,
    CommitMapping,
    CommitOptions,
    FileListItem,
    FileMetadata,
    FinalRecord,
)
from mediavault.security.filenames import generate_unique_name, sanitize_filename
from mediavault.security.paths import normalize_root, resolve, to_public_path
from mediavault.security.signatures import classify_file
from mediavault.services.processing import HookContext, HookResult, ProcessingHook
from mediavault.services.staging_service import RawFile, StagingArea, TempEntry, TempSession

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CommitReport:
    session_id: str
    records: list[FinalRecord] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    failures: list[CommitFailure] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.failures)


@dataclass(frozen=True, slots=True)
class _PlannedWrite:
    mapping: CommitMapping
    entry: TempEntry
    filename: str
    target: Path
    storage_path: str


def _utc(timestamp: float) -> datetime:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


class StorageService:
    """Final storage: commit, list, inspect, delete and replace."""

    def __init__(
        self,
        settings: StorageSettings,
        staging: StagingArea,
        hook: ProcessingHook | None = None,
    ):
        self.settings = settings
        self.staging = staging
        self.hook = hook
        self.root = Path(normalize_root(settings.final_root))

    def _plan(
        self,
        session: TempSession,
        base: Path,
        mappings: Iterable[CommitMapping],
        options: CommitOptions,
    ) -> tuple[list[_PlannedWrite], list[int]]:
        planned: list[_PlannedWrite] = []
        skipped: list[int] = []
        seen: set[str] = set()
        for mapping in mappings:
            entry = session.entries.get(mapping.temp_index)
            if entry is None:
                if options.fail_if_missing:
                    raise TempEntryMissing(mapping.temp_index)
                logger.warning(
                    "Skipping missing temp index %s in session %s",
                    mapping.temp_index,
                    session.session_id,
                )
                skipped.append(mapping.temp_index)
                continue

            if mapping.filename is not None:
                filename = sanitize_filename(mapping.filename)
                if not filename:
                    raise InvalidPathError(
                        f"Filename for temp index {mapping.temp_index} is empty after sanitizing",
                        extras={"temp_index": mapping.temp_index},
                    )
            else:
                filename = generate_unique_name(entry.original_name)

            target = resolve(base, filename)
            storage_path = to_public_path(self.root, target)
            if storage_path in seen:
                raise DuplicateTarget(
                    f"More than one mapping targets {storage_path}",
                    extras={"temp_index": mapping.temp_index},
                )
            seen.add(storage_path)
            planned.append(_PlannedWrite(mapping, entry, filename, target, storage_path))
        return planned, skipped

    async def commit(
        self,
        session_id: str,
        target_base: str,
        mappings: Iterable[CommitMapping],
        options: CommitOptions | None = None,
    ) -> CommitReport:
        """
        Move staged files into `<final_root>/<target_base>/`.

        Records come back in mapping order. The temp session is removed once
        every mapping has been attempted.
        """
        options = options or CommitOptions()
        session = await self.staging.begin_commit(session_id)
        try:
            base = resolve(self.root, target_base)
            planned, skipped = self._plan(session, base, mappings, options)
        except Exception:
            self.staging.release(session)
            raise

        report = CommitReport(session_id=session.session_id, skipped=skipped)
        try:
            for item in planned:
                try:
                    report.records.append(await self._commit_one(session, item))
                except StorageError as exc:
                    logger.warning("Commit of temp index %s refused: %s", item.entry.index, exc.message)
                    report.failures.append(
                        CommitFailure(temp_index=item.entry.index, code=exc.code, detail=exc.message)
                    )
                except OSError as exc:
                    logger.warning(
                        "Commit of temp index %s to %s failed: %s",
                        item.entry.index,
                        item.storage_path,
                        exc,
                    )
                    report.failures.append(
                        CommitFailure(
                            temp_index=item.entry.index,
                            code="write_failed",
                            detail=exc.strerror or "Could not write file",
                        )
                    )
        finally:
            await self.staging.close(session)

        logger.info(
            "Committed %d file(s) from session %s (%d skipped, %d failed)",
            len(report.records),
            session.session_id,
            len(report.skipped),
            len(report.failures),
            extra={"session_id": session.session_id, "count": len(report.records)},
        )
        return report

    async def _run_hook(
        self, session: TempSession, item: _PlannedWrite
    ) -> tuple[HookResult, bytes] | None:
        proposed = session.path / f"{item.entry.index}.out-{secrets.token_hex(6)}"
        context = HookContext(
            session_id=session.session_id,
            temp_index=item.entry.index,
            category=item.entry.category,
            mime=item.entry.mime,
            storage_path=item.storage_path,
        )
        try:
            result = await self.hook(item.entry.path, proposed, item.filename, context)
            if result is None:
                return None
            return result, await read_bytes(proposed)
        except Exception as exc:
            raise ProcessingHookFailed(str(exc)) from exc
        finally:
            await remove_tree(proposed)

    async def _commit_one(self, session: TempSession, item: _PlannedWrite) -> FinalRecord:
        entry = item.entry
        assert_no_symlink_parents(self.root, item.target)

        processed = None
        if self.hook is not None:
            try:
                processed = await self._run_hook(session, item)
            except ProcessingHookFailed as exc:
                logger.warning(
                    "Processing hook failed for temp index %s; storing raw bytes: %s",
                    entry.index,
                    exc,
                )
        if processed is None:
            result, data = HookResult(), await read_bytes(entry.path)
        else:
            result, data = processed

        await write_atomic(item.target, data)
        structural = entry.metadata
        return FinalRecord(
            filename=item.filename,
            category=entry.category,
            mime=result.mime or entry.mime,
            storage_path=item.storage_path,
            url=self.settings.public_url(item.storage_path),
            size_bytes=len(data),
            sha256=sha256_hex(data),
            width=result.width if result.width is not None else structural.width,
            height=result.height if result.height is not None else structural.height,
            duration=structural.duration,
            pages=structural.pages,
            page_number=item.mapping.page_number,
            is_cover=item.mapping.is_cover,
            metadata=result.metadata,
        )

    def _resolve_file(self, relative_path: str) -> Path:
        target = resolve(self.root, relative_path)
        if target == self.root:
            raise InvalidPathError("Path must name a file under the storage root")
        return target

    async def list_final(
        self, relative_dir: str = "", offset: int = 0, limit: int = 50
    ) -> tuple[int, list[FileListItem]]:
        """Page through one directory of final storage, sorted by name."""
        base = resolve(self.root, relative_dir)
        assert_no_symlink_parents(self.root, base)
        if base == self.root and not await path_exists(base):
            return 0, []
        entries = await list_dir(base)
        page = entries[offset : offset + limit]
        items = []
        for entry in page:
            storage_path = to_public_path(self.root, entry.path)
            items.append(
                FileListItem(
                    name=entry.name,
                    storage_path=storage_path,
                    url=None if entry.is_dir else self.settings.public_url(storage_path),
                    is_dir=entry.is_dir,
                    size_bytes=0 if entry.is_dir else entry.size,
                    modified_at=_utc(entry.modified_at),
                )
            )
        return len(entries), items

    async def get_metadata(self, relative_path: str) -> FileMetadata:
        target = self._resolve_file(relative_path)
        assert_no_symlink_parents(self.root, target)
        if not await path_exists(target):
            raise NotFound("File not found")
        if await is_dir(target):
            raise InvalidPathError("Path is a directory")
        stat = await stat_path(target)
        detection = await classify_file(target, file_size=stat.st_size)
        storage_path = to_public_path(self.root, target)
        return FileMetadata(
            filename=target.name,
            storage_path=storage_path,
            url=self.settings.public_url(storage_path),
            category=detection.category,
            mime=detection.mime,
            size_bytes=stat.st_size,
            sha256=await sha256_file(target),
            modified_at=_utc(stat.st_mtime),
        )

    async def delete_path(self, relative_path: str) -> bool:
        """Delete a file or directory. Deleting a missing path succeeds."""
        target = self._resolve_file(relative_path)
        removed = await remove_tree(target)
        if removed:
            logger.info("Deleted %s", to_public_path(self.root, target))
        return removed

    async def replace(
        self,
        relative_path: str,
        data: bytes,
        *,
        filename: str | None = None,
        content_type: str | None = None,
    ) -> FileMetadata:
        """
        Overwrite an existing file with new bytes.

        The bytes go through the same staging validation as a fresh upload.
        """
        target = self._resolve_file(relative_path)
        if not await path_exists(target):
            raise NotFound("File not found")
        if await is_dir(target):
            raise InvalidPathError("Path is a directory")

        session, entries = await self.staging.stage([RawFile(filename or target.name, data, content_type)])
        try:
            entry = entries[0]
            assert_no_symlink_parents(self.root, target)
            await write_atomic(target, data)
        finally:
            await self.staging.discard(session.session_id)

        stat = await stat_path(target)
        storage_path = to_public_path(self.root, target)
        logger.info("Replaced %s (%d bytes)", storage_path, len(data))
        return FileMetadata(
            filename=target.name,
            storage_path=storage_path,
            url=self.settings.public_url(storage_path),
            category=entry.category,
            mime=entry.mime,
            size_bytes=len(data),
            sha256=sha256_hex(data),
            modified_at=_utc(stat.st_mtime),
        )
