import dataclasses
import hashlib

from fastapi.testclient import TestClient

from mediavault.app.api import create_app


def _upload(client, headers, *files, **form):
    return client.post(
        "/api/v1/upload/temp",
        headers=headers,
        files=[("files", item) for item in files],
        data=form,
    )


def _commit(client, headers, session_id, target_base, mappings, **options):
    body = {"session_id": session_id, "target_base": target_base, "mappings": mappings}
    if options:
        body["options"] = options
    return client.post("/api/v1/upload/commit", headers=headers, json=body)


def test_health_is_public(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"


def test_missing_api_key_returns_problem(client):
    response = client.get("/api/v1/files")
    assert response.status_code == 401
    body = response.json()
    assert body["code"] == "not_authenticated"
    assert body["status"] == 401
    assert body["instance"] == "/api/v1/files"
    assert response.headers["X-Correlation-ID"] == body["correlation_id"]
    assert response.headers["WWW-Authenticate"] == "ApiKey"


def test_wrong_api_key_is_rejected(client):
    response = client.get("/api/v1/files", headers={"Authorization": "ApiKey nope"})
    assert response.status_code == 401


def test_stage_commit_inspect_delete_round_trip(client, auth_headers, settings, png):
    data = png(size=50000)
    staged = _upload(client, auth_headers, ("My Photo!!.PNG", data, "image/png"))
    assert staged.status_code == 201
    session_id = staged.json()["session_id"]
    entry = staged.json()["files"][0]
    assert entry == {
        "index": 0,
        "original_name": "My_Photo.PNG",
        "size_bytes": 50000,
        "category": "image",
        "mime": "image/png",
        "skipped_checks": [],
    }

    listed = client.get(f"/api/v1/upload/temp/{session_id}", headers=auth_headers)
    assert listed.status_code == 200
    assert [f["index"] for f in listed.json()["files"]] == [0]

    committed = _commit(
        client, auth_headers, session_id, "books/1", [{"temp_index": 0, "filename": "cover.webp"}]
    )
    assert committed.status_code == 201
    record = committed.json()["files"][0]
    assert record["storage_path"] == "books/1/cover.webp"
    assert record["size_bytes"] == 50000
    assert record["sha256"] == hashlib.sha256(data).hexdigest()
    assert record["url"] == "https://cdn.test/media/books/1/cover.webp"
    assert committed.json()["failures"] == []

    meta = client.get("/api/v1/meta/file", params={"path": "books/1/cover.webp"}, headers=auth_headers)
    assert meta.status_code == 200
    assert meta.json()["sha256"] == record["sha256"]
    assert meta.json()["category"] == "image"

    files = client.get("/api/v1/files", params={"dir": "books/1"}, headers=auth_headers)
    assert files.status_code == 200
    assert files.json()["total"] == 1
    assert files.json()["items"][0]["name"] == "cover.webp"

    deleted = client.delete("/api/v1/files", params={"path": "books/1/cover.webp"}, headers=auth_headers)
    assert deleted.status_code == 204
    again = client.delete("/api/v1/files", params={"path": "books/1/cover.webp"}, headers=auth_headers)
    assert again.status_code == 204
    assert not (settings.final_root / "books" / "1" / "cover.webp").exists()

    gone = client.get(f"/api/v1/upload/temp/{session_id}", headers=auth_headers)
    assert gone.status_code == 404
    assert gone.json()["code"] == "temp_session_not_found"


def test_rejected_batch_is_itemized(client, auth_headers, settings, png):
    response = _upload(
        client,
        auth_headers,
        ("one.png", png(), "image/png"),
        ("evil.png", b"MZ\x90\x00\x03\x00\x00\x00", "image/png"),
        ("three.png", png(), "image/png"),
    )
    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "validation_failed"
    assert [error["index"] for error in body["errors"]] == [1]
    assert body["errors"][0]["code"] == "unsupported_category"
    assert list(settings.temp_root.iterdir()) == []


def test_oversized_upload_is_refused(settings, png, auth_headers):
    app = create_app(dataclasses.replace(settings, upload_limit_bytes=64))
    with TestClient(app) as client:
        response = _upload(client, auth_headers, ("big.png", png(size=4096), "image/png"))
    assert response.status_code == 400
    error = response.json()["errors"][0]
    assert error["code"] == "too_large"
    assert error["limit"] == 64
    assert error["observed"] == 65


def test_media_type_pins_category(client, auth_headers, png):
    response = _upload(client, auth_headers, ("a.png", png(), "image/png"), media_type="document")
    assert response.status_code == 400
    assert response.json()["errors"][0]["code"] == "category_mismatch"

    response = _upload(client, auth_headers, ("a.png", png(), "image/png"), media_type="mixed")
    assert response.status_code == 201

    response = _upload(client, auth_headers, ("a.png", png(), "image/png"), media_type="hologram")
    assert response.status_code == 400
    assert response.json()["code"] == "invalid_media_type"


def test_stage_appends_to_existing_session(client, auth_headers, png):
    first = _upload(client, auth_headers, ("a.png", png(), "image/png"))
    session_id = first.json()["session_id"]
    second = _upload(client, auth_headers, ("b.png", png(), "image/png"), session_id=session_id)
    assert second.status_code == 201
    assert second.json()["session_id"] == session_id
    assert [f["index"] for f in second.json()["files"]] == [0, 1]


def test_path_traversal_is_not_reflected(client, auth_headers):
    response = client.get(
        "/api/v1/meta/file", params={"path": "../../etc/passwd"}, headers=auth_headers
    )
    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "path_traversal"
    assert "passwd" not in body["detail"]


def test_commit_unknown_session(client, auth_headers):
    response = _commit(client, auth_headers, "does-not-exist-0000", "", [{"temp_index": 0}])
    assert response.status_code == 404
    assert response.json()["code"] == "temp_session_not_found"


def test_commit_missing_entry(client, auth_headers, png):
    session_id = _upload(client, auth_headers, ("a.png", png(), "image/png")).json()["session_id"]
    response = _commit(client, auth_headers, session_id, "", [{"temp_index": 4, "filename": "x.png"}])
    assert response.status_code == 400
    assert response.json()["code"] == "temp_entry_missing"
    assert response.json()["temp_index"] == 4

    skipped = _commit(
        client,
        auth_headers,
        session_id,
        "",
        [{"temp_index": 4, "filename": "x.png"}, {"temp_index": 0, "filename": "y.png"}],
        fail_if_missing=False,
    )
    assert skipped.status_code == 201
    assert skipped.json()["skipped"] == [4]


def test_partial_commit_returns_multi_status(client, auth_headers, settings, png):
    (settings.final_root / "out" / "blocked.png").mkdir(parents=True)
    session_id = _upload(
        client, auth_headers, ("a.png", png(), "image/png"), ("b.png", png(), "image/png")
    ).json()["session_id"]
    response = _commit(
        client,
        auth_headers,
        session_id,
        "out",
        [{"temp_index": 0, "filename": "ok.png"}, {"temp_index": 1, "filename": "blocked.png"}],
    )
    assert response.status_code == 207
    body = response.json()
    assert [f["storage_path"] for f in body["files"]] == ["out/ok.png"]
    assert body["failures"][0]["temp_index"] == 1


def test_commit_body_is_validated(client, auth_headers):
    response = client.post(
        "/api/v1/upload/commit",
        headers=auth_headers,
        json={"session_id": "abc", "mappings": []},
    )
    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "validation_error"
    assert body["errors"]


def test_discard_session(client, auth_headers, png):
    session_id = _upload(client, auth_headers, ("a.png", png(), "image/png")).json()["session_id"]
    assert client.delete(f"/api/v1/upload/temp/{session_id}", headers=auth_headers).status_code == 204
    assert client.get(f"/api/v1/upload/temp/{session_id}", headers=auth_headers).status_code == 404


def test_replace_endpoint(client, auth_headers, png):
    session_id = _upload(client, auth_headers, ("a.png", png(), "image/png")).json()["session_id"]
    _commit(client, auth_headers, session_id, "pics", [{"temp_index": 0, "filename": "a.png"}])

    new_data = png(24, 24)
    response = client.post(
        "/api/v1/files/replace",
        headers=auth_headers,
        data={"path": "pics/a.png"},
        files={"file": ("a.png", new_data, "image/png")},
    )
    assert response.status_code == 200
    assert response.json()["sha256"] == hashlib.sha256(new_data).hexdigest()

    missing = client.post(
        "/api/v1/files/replace",
        headers=auth_headers,
        data={"path": "pics/none.png"},
        files={"file": ("a.png", new_data, "image/png")},
    )
    assert missing.status_code == 404


def test_delete_root_is_refused(client, auth_headers):
    response = client.delete("/api/v1/files", params={"path": "/"}, headers=auth_headers)
    assert response.status_code == 400
    assert response.json()["code"] == "invalid_path"


def test_incoming_correlation_id_is_kept(client):
    response = client.get("/api/v1/files", headers={"X-Correlation-ID": "client-trace-1234"})
    assert response.headers["X-Correlation-ID"] == "client-trace-1234"
    assert response.json()["correlation_id"] == "client-trace-1234"


def test_internal_errors_hide_details_in_production(settings, auth_headers):
    app = create_app(dataclasses.replace(settings, production=True))

    async def exploding_list(*args, **kwargs):
        raise RuntimeError("disk at /secret/path failed")

    app.state.storage.list_final = exploding_list
    with TestClient(app, raise_server_exceptions=False) as client:
        response = client.get("/api/v1/files", headers=auth_headers)
    assert response.status_code == 500
    body = response.json()
    assert body["code"] == "internal_error"
    assert "/secret/path" not in body["detail"]
