from datetime import datetime, timedelta, timezone

import pytest

from mediavault.domain.errors import NotFound
from mediavault.services.api_key_service import INTERNAL_KEY_ID, ApiKeyService


def test_internal_key_is_registered(settings):
    service = ApiKeyService(settings)
    record = service.verify(settings.internal_api_key)
    assert record is not None
    assert record.id == INTERNAL_KEY_ID
    assert service.is_internal(record)
    assert record.last_used_at is not None


def test_issued_key_is_stored_hashed(settings):
    service = ApiKeyService(settings)
    issued = service.issue("gallery-import")
    stored = service.store.get(issued.id)
    assert stored.key_hash == service.hash_key(issued.key)
    assert issued.key not in stored.model_dump_json()
    assert service.verify(issued.key).id == issued.id
    assert not service.is_internal(stored)


def test_unknown_and_empty_keys_fail(settings):
    service = ApiKeyService(settings)
    assert service.verify("not-a-key") is None
    assert service.verify("") is None


def test_revoked_key_fails(settings):
    service = ApiKeyService(settings)
    issued = service.issue("temp")
    service.revoke(issued.id)
    assert service.verify(issued.key) is None


def test_revoke_unknown_key(settings):
    with pytest.raises(NotFound):
        ApiKeyService(settings).revoke("nope")


def test_expired_key_fails(settings):
    service = ApiKeyService(settings)
    issued = service.issue("short-lived", expires_in_days=1)
    service.store.update(issued.id, expires_at=datetime.now(timezone.utc) - timedelta(seconds=1))
    assert service.verify(issued.key) is None


def test_issue_over_http_and_use_key(client, auth_headers):
    response = client.post("/api/v1/api-keys", headers=auth_headers, json={"label": "cms"})
    assert response.status_code == 201
    key = response.json()["key"]

    assert client.get("/api/v1/files", headers={"X-API-Key": key}).status_code == 200
    assert client.get("/api/v1/files", headers={"Authorization": f"Bearer {key}"}).status_code == 200


def test_regular_key_cannot_manage_keys(client, auth_headers):
    key = client.post("/api/v1/api-keys", headers=auth_headers, json={"label": "cms"}).json()["key"]
    response = client.post("/api/v1/api-keys", headers={"X-API-Key": key}, json={"label": "other"})
    assert response.status_code == 403
    assert response.json()["code"] == "access_denied"


def test_revoke_over_http(client, auth_headers):
    issued = client.post("/api/v1/api-keys", headers=auth_headers, json={"label": "cms"}).json()
    response = client.delete(f"/api/v1/api-keys/{issued['id']}", headers=auth_headers)
    assert response.status_code == 204
    assert client.get("/api/v1/files", headers={"X-API-Key": issued["key"]}).status_code == 401

    missing = client.delete("/api/v1/api-keys/unknown", headers=auth_headers)
    assert missing.status_code == 404


def test_internal_key_cannot_revoke_itself(client, auth_headers):
    response = client.delete(f"/api/v1/api-keys/{INTERNAL_KEY_ID}", headers=auth_headers)
    assert response.status_code == 400
    assert response.json()["detail"] == "A key cannot revoke itself"


def test_issue_request_is_validated(client, auth_headers):
    response = client.post("/api/v1/api-keys", headers=auth_headers, json={"label": ""})
    assert response.status_code == 422
