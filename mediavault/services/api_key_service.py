"""
API key service.

Keys are random secrets handed out once; the store only keeps an HMAC of
each secret under the configured pepper.
"""

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from mediavault.adapters.database import ApiKeyStore
from mediavault.config import StorageSettings
from mediavault.domain.errors import NotFound
from mediavault.domain.models import ApiKeyIssued, ApiKeyRecord

logger = logging.getLogger(__name__)

KEY_BYTES = 48
INTERNAL_KEY_ID = "internal"


class ApiKeyService:
    """Issue, verify and revoke API keys."""

    def __init__(self, settings: StorageSettings, store: Optional[ApiKeyStore] = None):
        self.pepper = settings.api_key_pepper.encode()
        self.store = store or ApiKeyStore()
        if settings.internal_api_key:
            self._register_internal(settings.internal_api_key)

    def hash_key(self, key: str) -> str:
        return hmac.new(self.pepper, key.encode(), hashlib.sha256).hexdigest()

    def _register_internal(self, key: str) -> None:
        self.store.add(
            ApiKeyRecord(
                id=INTERNAL_KEY_ID,
                label="internal",
                key_hash=self.hash_key(key),
                created_at=datetime.now(timezone.utc),
            )
        )

    def issue(self, label: str, expires_in_days: Optional[int] = None) -> ApiKeyIssued:
        """Create a key and return its plaintext exactly once."""
        key = secrets.token_hex(KEY_BYTES)
        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(days=expires_in_days) if expires_in_days else None
        record = self.store.add(
            ApiKeyRecord(
                id=secrets.token_hex(8),
                label=label,
                key_hash=self.hash_key(key),
                created_at=now,
                expires_at=expires_at,
            )
        )
        logger.info("API key issued: %s (%s)", record.id, label)
        return ApiKeyIssued(
            id=record.id,
            label=record.label,
            key=key,
            created_at=record.created_at,
            expires_at=record.expires_at,
        )

    def verify(self, key: str) -> Optional[ApiKeyRecord]:
        """Return the matching live record, or None."""
        if not key:
            return None
        candidate = self.hash_key(key)
        now = datetime.now(timezone.utc)
        for record in self.store.list():
            if not hmac.compare_digest(record.key_hash, candidate):
                continue
            if record.revoked:
                logger.warning("Revoked API key used: %s", record.id)
                return None
            if record.expires_at is not None and record.expires_at <= now:
                logger.warning("Expired API key used: %s", record.id)
                return None
            return self.store.update(record.id, last_used_at=now)
        return None

    def is_internal(self, record: ApiKeyRecord) -> bool:
        return record.id == INTERNAL_KEY_ID

    def revoke(self, key_id: str) -> ApiKeyRecord:
        record = self.store.update(key_id, revoked=True)
        if record is None:
            raise NotFound("API key not found")
        logger.info("API key revoked: %s", key_id)
        return record
