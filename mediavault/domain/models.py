"""
API and record models for the storage pipeline.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from mediavault.domain.rules import Category


class TempEntryView(BaseModel):
    """Staged file as reported back to the uploader."""

    index: int
    original_name: str
    size_bytes: int
    category: Category
    mime: str
    skipped_checks: List[str] = Field(default_factory=list)


class StageResponse(BaseModel):
    """Result of staging a batch."""

    session_id: str
    files: List[TempEntryView]


class CommitMapping(BaseModel):
    """Move one staged file into final storage."""

    temp_index: int = Field(..., ge=0)
    filename: Optional[str] = Field(None, min_length=1, max_length=255)
    page_number: Optional[int] = Field(None, ge=0)
    is_cover: bool = False


class CommitOptions(BaseModel):
    fail_if_missing: bool = True


class CommitRequest(BaseModel):
    """Commit request body."""

    session_id: str = Field(..., min_length=1, max_length=64)
    target_base: str = Field("", max_length=1024)
    mappings: List[CommitMapping] = Field(..., min_length=1)
    options: CommitOptions = Field(default_factory=CommitOptions)

    @field_validator("target_base")
    @classmethod
    def validate_target_base(cls, v):
        if "\x00" in v:
            raise ValueError("target_base must not contain NUL bytes")
        return v


class FinalRecord(BaseModel):
    """Committed file."""

    filename: str
    category: Category
    mime: str
    storage_path: str
    url: str
    size_bytes: int
    sha256: str
    width: Optional[int] = None
    height: Optional[int] = None
    duration: Optional[float] = None
    pages: Optional[int] = None
    page_number: Optional[int] = None
    is_cover: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CommitFailure(BaseModel):
    """Mapping that could not be written."""

    temp_index: int
    code: str
    detail: str


class CommitResponse(BaseModel):
    """Commit outcome; `failures` is non-empty on partial success."""

    session_id: str
    files: List[FinalRecord]
    skipped: List[int] = Field(default_factory=list)
    failures: List[CommitFailure] = Field(default_factory=list)


class FileListItem(BaseModel):
    name: str
    storage_path: str
    url: Optional[str] = None
    is_dir: bool
    size_bytes: int
    modified_at: datetime


class FileListResponse(BaseModel):
    """Paged directory listing."""

    items: List[FileListItem]
    total: int
    offset: int
    limit: int


class FileMetadata(BaseModel):
    """Stored file as seen on disk right now."""

    filename: str
    storage_path: str
    url: str
    category: Category
    mime: str
    size_bytes: int
    sha256: str
    modified_at: datetime


class ApiKeyCreate(BaseModel):
    """API key issue request."""

    label: str = Field(..., min_length=1, max_length=64)
    expires_in_days: Optional[int] = Field(None, ge=1, le=3650)


class ApiKeyRecord(BaseModel):
    """Stored API key. Only the keyed hash of the secret is kept."""

    id: str
    label: str
    key_hash: str
    created_at: datetime
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    revoked: bool = False


class ApiKeyIssued(BaseModel):
    """Freshly issued key; the plaintext `key` is shown exactly once."""

    id: str
    label: str
    key: str
    created_at: datetime
    expires_at: Optional[datetime] = None
