"""Domain exceptions raised by the storage pipeline."""

from __future__ import annotations

from typing import Any


class StorageError(Exception):
    """Base exception carrying a machine-readable code and an HTTP status."""

    code = "storage_error"
    status = 500
    title = "Storage error"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status: int | None = None,
        extras: dict[str, Any] | None = None,
    ):
        self.message = message
        if code is not None:
            self.code = code
        if status is not None:
            self.status = status
        self.extras = extras or {}
        super().__init__(message)


class PathTraversalError(StorageError):
    """Resolved path escapes its storage root. The message never echoes the input."""

    code = "path_traversal"
    status = 400
    title = "Invalid path"

    def __init__(self, message: str = "Invalid storage path"):
        super().__init__(message)


class InvalidPathError(StorageError):
    code = "invalid_path"
    status = 400
    title = "Invalid path"


class NotFound(StorageError):
    code = "not_found"
    status = 404
    title = "Resource not found"


class SessionNotFound(StorageError):
    code = "temp_session_not_found"
    status = 404
    title = "Upload session not found"

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__("Upload session not found or already closed")


class SessionBusy(StorageError):
    code = "session_busy"
    status = 409
    title = "Upload session busy"

    def __init__(self, session_id: str, message: str = "Upload session is being committed"):
        self.session_id = session_id
        super().__init__(message)


class TempEntryMissing(StorageError):
    code = "temp_entry_missing"
    status = 400
    title = "Invalid commit mapping"

    def __init__(self, index: int):
        self.index = index
        super().__init__(f"temp file index {index} missing", extras={"temp_index": index})


class DuplicateTarget(StorageError):
    code = "duplicate_target"
    status = 400
    title = "Invalid commit mapping"


class BatchRejected(StorageError):
    """Whole upload batch rejected; `errors` itemizes every failing file."""

    code = "validation_failed"
    status = 400
    title = "Upload rejected"

    def __init__(self, errors: list[dict[str, Any]], message: str | None = None):
        self.errors = errors
        count = len(errors)
        super().__init__(
            message or f"{count} file(s) failed validation",
            extras={"errors": errors},
        )


class ProbeError(Exception):
    """Structural probe could not read the file."""


class ProcessingHookFailed(Exception):
    """Processing hook raised; the orchestrator falls back to a raw copy."""
