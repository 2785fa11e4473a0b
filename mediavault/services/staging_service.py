"""
Temp staging area.

Uploaded bytes land in `<temp_root>/<session_id>/<index>` before anything
touches final storage. Each session moves through `open -> committing ->
closed` or `open -> expired -> closed`; a session that is committing refuses
new writes instead of waiting on a lock.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import re
import secrets
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from mediavault.adapters.filesystem import list_dir, path_exists, remove_tree, write_atomic
from mediavault.config import StorageSettings
from mediavault.domain.errors import BatchRejected, SessionBusy, SessionNotFound, StorageError
from mediavault.domain.models import TempEntryView
from mediavault.domain.rules import Category
from mediavault.security.filenames import sanitize_filename
from mediavault.security.paths import normalize_root, resolve
from mediavault.security.signatures import OCTET_STREAM
from mediavault.services.policy_service import (
    TOO_LARGE,
    TOO_MANY_FILES,
    Candidate,
    PolicyDecision,
    PolicyEnforcer,
)
from mediavault.services.probes import StructuralMetadata

logger = logging.getLogger(__name__)

SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]{16,64}$")


class SessionState(str, enum.Enum):
    OPEN = "open"
    COMMITTING = "committing"
    CLOSED = "closed"
    EXPIRED = "expired"


@dataclass(slots=True)
class RawFile:
    """One uploaded file as received from the HTTP layer."""

    filename: str | None
    data: bytes
    content_type: str | None = None

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(slots=True)
class TempEntry:
    """A staged file. `index` is the key commit mappings refer to."""

    index: int
    original_name: str
    size: int
    path: Path
    declared_mime: str | None = None
    category: Category = Category.UNKNOWN
    mime: str = OCTET_STREAM
    accepted: bool = False
    skipped_checks: list[str] = field(default_factory=list)
    metadata: StructuralMetadata = field(default_factory=StructuralMetadata)

    def apply(self, decision: PolicyDecision) -> None:
        self.category = decision.category
        self.mime = decision.mime
        self.accepted = decision.accepted
        self.skipped_checks = list(decision.skipped_checks)
        self.metadata = decision.metadata

    def candidate(self) -> Candidate:
        return Candidate(self.index, self.path, self.size, self.declared_mime)

    def view(self) -> TempEntryView:
        return TempEntryView(
            index=self.index,
            original_name=self.original_name,
            size_bytes=self.size,
            category=self.category,
            mime=self.mime,
            skipped_checks=self.skipped_checks,
        )


@dataclass(slots=True)
class TempSession:
    session_id: str
    path: Path
    created_at: float
    state: SessionState = SessionState.OPEN
    entries: dict[int, TempEntry] = field(default_factory=dict)
    pending_writes: int = 0
    next_index: int = 0
    # False for sessions rediscovered on disk; they are re-validated at commit.
    validated: bool = True

    def sorted_entries(self) -> list[TempEntry]:
        return [self.entries[i] for i in sorted(self.entries)]


class StagingArea:
    """Owns temp sessions and the background sweep that expires them."""

    def __init__(self, settings: StorageSettings, enforcer: PolicyEnforcer):
        self.settings = settings
        self.enforcer = enforcer
        self.root = Path(normalize_root(settings.temp_root))
        self._sessions: dict[str, TempSession] = {}
        self._sweeper: asyncio.Task | None = None

    def session_dir(self, session_id: str) -> Path:
        if not SESSION_ID_RE.fullmatch(session_id or ""):
            raise SessionNotFound(session_id)
        return resolve(self.root, session_id)

    def _new_session(self) -> TempSession:
        session_id = secrets.token_urlsafe(24)
        session = TempSession(
            session_id=session_id,
            path=self.session_dir(session_id),
            created_at=time.time(),
        )
        self._sessions[session_id] = session
        return session

    async def _load_from_disk(self, session_id: str, path: Path) -> TempSession:
        entries: dict[int, TempEntry] = {}
        for item in await list_dir(path):
            if item.is_dir or not item.name.isdigit():
                continue
            index = int(item.name)
            entries[index] = TempEntry(index=index, original_name=item.name, size=item.size, path=item.path)
        session = TempSession(
            session_id=session_id,
            path=path,
            created_at=time.time(),
            entries=entries,
            next_index=max(entries, default=-1) + 1,
            validated=False,
        )
        logger.info("Recovered temp session %s from disk with %d entries", session_id, len(entries))
        return session

    async def get(self, session_id: str) -> TempSession:
        """Return a live session, recovering it from disk if needed."""
        path = self.session_dir(session_id)
        session = self._sessions.get(session_id)
        if session is not None and session.state in (SessionState.CLOSED, SessionState.EXPIRED):
            raise SessionNotFound(session_id)
        if not await path_exists(path):
            if session is not None:
                session.state = SessionState.CLOSED
                self._sessions.pop(session_id, None)
            raise SessionNotFound(session_id)
        if session is None:
            loaded = await self._load_from_disk(session_id, path)
            # Another task may have recovered it while we were listing.
            session = self._sessions.setdefault(session_id, loaded)
        return session

    async def list_session(self, session_id: str) -> list[TempEntry]:
        session = await self.get(session_id)
        return session.sorted_entries()

    def _precheck(self, session: TempSession | None, files: list[RawFile]) -> None:
        existing = len(session.entries) if session else 0
        limit = self.settings.max_files_per_batch
        if existing + len(files) > limit:
            raise BatchRejected(
                [
                    {
                        "index": None,
                        "code": TOO_MANY_FILES,
                        "reason": f"At most {limit} files per upload session",
                        "observed": existing + len(files),
                        "limit": limit,
                    }
                ]
            )
        ceiling = self.settings.upload_limit_bytes
        start = session.next_index if session else 0
        oversized = [
            {
                "index": start + pos,
                "code": TOO_LARGE,
                "reason": f"File exceeds the upload limit of {ceiling} bytes",
                "kind": "size",
                "observed": raw.size,
                "limit": ceiling,
            }
            for pos, raw in enumerate(files)
            if raw.size > ceiling
        ]
        if oversized:
            raise BatchRejected(oversized)

    async def stage(
        self,
        files: Iterable[RawFile],
        session_id: str | None = None,
        requested: Category | None = None,
    ) -> tuple[TempSession, list[TempEntry]]:
        """
        Write a batch into a session and validate it as a whole.

        Returns the session and the entries this call added. When any file
        fails validation, every entry written by this call is removed again
        (the whole directory for a freshly minted session) and
        `BatchRejected` lists each failure.
        """
        files = list(files)
        if not files:
            raise StorageError("No files provided", code="no_files", status=400)

        if session_id:
            session = await self.get(session_id)
            if session.state is not SessionState.OPEN:
                raise SessionBusy(session.session_id)
            created = False
        else:
            session = None
            created = True
        self._precheck(session, files)
        if session is None:
            session = self._new_session()

        start = session.next_index
        session.next_index += len(files)
        session.pending_writes += 1
        written: list[TempEntry] = []
        try:
            for pos, raw in enumerate(files):
                index = start + pos
                entry = TempEntry(
                    index=index,
                    original_name=sanitize_filename(raw.filename) or str(index),
                    size=raw.size,
                    path=session.path / str(index),
                    declared_mime=raw.content_type,
                )
                await write_atomic(entry.path, raw.data)
                written.append(entry)

            decisions = await self.enforcer.validate_batch(
                [entry.candidate() for entry in written], requested
            )
        except Exception:
            await self._rollback(session, written, created)
            raise
        finally:
            session.pending_writes -= 1

        for entry, decision in zip(written, decisions):
            entry.apply(decision)
            session.entries[entry.index] = entry
        logger.info(
            "Staged %d file(s) into temp session %s",
            len(written),
            session.session_id,
            extra={"session_id": session.session_id, "count": len(written)},
        )
        return session, written

    async def _rollback(self, session: TempSession, written: list[TempEntry], created: bool) -> None:
        if created:
            await remove_tree(session.path)
            session.state = SessionState.CLOSED
            self._sessions.pop(session.session_id, None)
            return
        for entry in written:
            await remove_tree(entry.path)

    async def begin_commit(self, session_id: str) -> TempSession:
        """Move a session to `committing`; fail fast with `SessionBusy`."""
        session = await self.get(session_id)
        if session.state is SessionState.COMMITTING:
            raise SessionBusy(session_id)
        if session.pending_writes > 0:
            raise SessionBusy(session_id, "Upload session still has writes in progress")
        session.state = SessionState.COMMITTING

        if not session.validated:
            try:
                decisions = await self.enforcer.validate_batch(
                    [entry.candidate() for entry in session.sorted_entries()]
                )
            except Exception:
                self.release(session)
                raise
            for decision in decisions:
                session.entries[decision.index].apply(decision)
            session.validated = True
        return session

    def release(self, session: TempSession) -> None:
        """Reopen a session whose commit was refused before any write."""
        if session.state is SessionState.COMMITTING:
            session.state = SessionState.OPEN

    async def close(self, session: TempSession) -> None:
        await remove_tree(session.path)
        session.state = SessionState.CLOSED
        self._sessions.pop(session.session_id, None)

    async def discard(self, session_id: str) -> None:
        """Drop a session and its files without committing."""
        session = await self.get(session_id)
        if session.state is SessionState.COMMITTING or session.pending_writes > 0:
            raise SessionBusy(session_id)
        await self.close(session)
        logger.info("Discarded temp session %s", session_id)

    async def sweep_once(self, now: float | None = None) -> list[str]:
        """Remove session directories idle for longer than the TTL."""
        now = time.time() if now is None else now
        if not await path_exists(self.root):
            return []
        removed = []
        for item in await list_dir(self.root):
            try:
                if not item.is_dir:
                    continue
                session = self._sessions.get(item.name)
                if session is not None and (
                    session.state is SessionState.COMMITTING or session.pending_writes > 0
                ):
                    continue
                if now - item.modified_at <= self.settings.temp_ttl_seconds:
                    continue
                if session is not None:
                    session.state = SessionState.EXPIRED
                await remove_tree(item.path)
                if session is not None:
                    session.state = SessionState.CLOSED
                    self._sessions.pop(item.name, None)
                removed.append(item.name)
            except Exception as exc:
                logger.warning("Temp sweep failed for %s: %s", item.name, exc, exc_info=True)
        if removed:
            logger.info("Temp sweep removed %d expired session(s)", len(removed))
        return removed

    async def _sweep_forever(self) -> None:
        interval = self.settings.sweep_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep_once()
            except Exception:
                logger.exception("Temp sweep cycle failed")

    def start(self) -> None:
        """Start the background sweeper on the running loop."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(self._sweep_forever(), name="temp-sweeper")

    async def stop(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._sweeper
        self._sweeper = None
