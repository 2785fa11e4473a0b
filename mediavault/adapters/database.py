"""
Key store adapter.
In-memory storage; swapping in a SQL table only needs the same methods.
"""

from typing import Dict, List, Optional

from mediavault.domain.models import ApiKeyRecord


class ApiKeyStore:
    """In-memory API key table keyed by id."""

    def __init__(self):
        self.keys: Dict[str, ApiKeyRecord] = {}

    def add(self, record: ApiKeyRecord) -> ApiKeyRecord:
        """Insert a record, replacing any record with the same id."""
        self.keys[record.id] = record
        return record

    def get(self, key_id: str) -> Optional[ApiKeyRecord]:
        return self.keys.get(key_id)

    def update(self, key_id: str, **changes) -> Optional[ApiKeyRecord]:
        record = self.keys.get(key_id)
        if record is None:
            return None
        updated = record.model_copy(update=changes)
        self.keys[key_id] = updated
        return updated

    def list(self) -> List[ApiKeyRecord]:
        return sorted(self.keys.values(), key=lambda record: record.created_at)

    def clear(self) -> None:
        self.keys.clear()
