import json
import shutil
import uuid
from pathlib import Path

from fastapi.testclient import TestClient

from audiobook_upload.config import settings
from audiobook_upload.db import Base, engine
from audiobook_upload.main import app, orchestrator
from audiobook_upload.models import Book  # noqa: F401


def _reset_state() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    shutil.rmtree(Path(settings.storage_root), ignore_errors=True)


def _upload_id() -> str:
    return f"api-{uuid.uuid4()}"


def _put_chunk(client: TestClient, upload_id: str, index: int, total: int, payload: bytes, **form):
    data = {"total_chunks": str(total), **form}
    files = {"chunk": ("blob", payload, "application/octet-stream")}
    cover = data.pop("cover", None)
    if cover is not None:
        files["cover"] = cover
    return client.put(f"/v1/uploads/{upload_id}/chunks/{index}", data=data, files=files)


def _events_from_caplog(caplog, logger_name: str) -> list[dict]:
    events: list[dict] = []
    for record in caplog.records:
        if record.name != logger_name:
            continue
        try:
            events.append(json.loads(record.message))
        except json.JSONDecodeError:
            continue
    return events


def test_chunked_upload_finalize_flow() -> None:
    _reset_state()
    upload_id = _upload_id()
    with TestClient(app) as client:
        first = _put_chunk(
            client,
            upload_id,
            0,
            3,
            b"abcd",
            title="Dune",
            author="Frank Herbert",
            description="Desert planet",
            original_filename="dune.m4a",
            cover=("cover.jpg", b"\xff\xd8cover", "image/jpeg"),
        )
        assert first.status_code == 202, first.text
        assert first.json() == {"success": True, "message": "Chunk 1/3 uploaded successfully"}

        for idx, chunk in ((2, b"ijk"), (1, b"efgh")):
            response = _put_chunk(client, upload_id, idx, 3, chunk)
            assert response.status_code == 202, response.text

        progress = client.get(f"/v1/uploads/{upload_id}/progress")
        assert progress.json() == {"uploaded_chunks": 3, "total_chunks": 3, "progress": 100.0}

        finalize = client.post(f"/v1/uploads/{upload_id}/finalize")
        assert finalize.status_code == 201, finalize.text
        book = finalize.json()
        assert book["title"] == "Dune"
        assert book["author"] == "Frank Herbert"
        assert book["description"] == "Desert planet"
        assert book["audio_filename"] == "dune.m4a"
        assert book["audio_mime_type"] == "audio/mp4"
        assert book["audio_size"] == 11
        assert book["cover_key"].startswith("covers/")

        root = Path(settings.storage_root)
        assert (root / book["audio_key"]).read_bytes() == b"abcdefghijk"
        assert (root / book["cover_key"]).read_bytes() == b"\xff\xd8cover"

        gone = client.get(f"/v1/uploads/{upload_id}/progress")
        assert gone.status_code == 200
        assert gone.json() is None

        again = client.post(f"/v1/uploads/{upload_id}/finalize")
        assert again.status_code == 400
        assert again.json()["detail"] == "upload session not found"


def test_first_chunk_requires_title_and_author() -> None:
    upload_id = _upload_id()
    with TestClient(app) as client:
        response = _put_chunk(client, upload_id, 0, 2, b"data", title="Only title")
        assert response.status_code == 400
        body = response.json()
        assert body["detail"] == "title and author are required for the first chunk"
        assert body["error_code"] == "bad_request"
        assert body["upload_id"] == upload_id


def test_chunk_without_session_is_rejected() -> None:
    with TestClient(app) as client:
        response = _put_chunk(client, _upload_id(), 1, 2, b"data")
        assert response.status_code == 400
        assert "cannot upload chunk without existing session" in response.json()["detail"]


def test_chunk_file_is_required() -> None:
    upload_id = _upload_id()
    with TestClient(app) as client:
        response = client.put(
            f"/v1/uploads/{upload_id}/chunks/0",
            data={"total_chunks": "1", "title": "T", "author": "A"},
            files={"unrelated": ("x.txt", b"x", "text/plain")},
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "chunk file is required"


def test_finalize_incomplete_then_missing_chunks_and_cleanup() -> None:
    upload_id = _upload_id()
    with TestClient(app) as client:
        assert _put_chunk(client, upload_id, 0, 4, b"a", title="T", author="A").status_code == 202
        assert _put_chunk(client, upload_id, 3, 4, b"d").status_code == 202

        finalize = client.post(f"/v1/uploads/{upload_id}/finalize")
        assert finalize.status_code == 400
        assert finalize.json()["detail"].startswith("incomplete upload: 2/4 chunks received")

        missing = client.get(f"/v1/uploads/{upload_id}/missing-chunks")
        assert missing.status_code == 200
        assert missing.json()["missing_chunk_indexes"] == [1, 2]

        progress = client.get(f"/v1/uploads/{upload_id}/progress")
        assert progress.json()["progress"] == 50.0

        assert client.delete(f"/v1/uploads/{upload_id}").status_code == 204
        assert client.delete(f"/v1/uploads/{upload_id}").status_code == 204
        assert client.get(f"/v1/uploads/{upload_id}/missing-chunks").status_code == 404


def test_finalize_failure_discards_session(monkeypatch) -> None:
    class _FailingCreator:
        def create_book(self, draft):
            raise RuntimeError("database is down")

    monkeypatch.setattr(orchestrator, "creator", _FailingCreator())
    upload_id = _upload_id()
    with TestClient(app) as client:
        assert _put_chunk(client, upload_id, 0, 1, b"whole", title="T", author="A").status_code == 202

        finalize = client.post(f"/v1/uploads/{upload_id}/finalize")
        assert finalize.status_code == 500
        assert finalize.json()["error_code"] == "internal_error"
        assert finalize.json()["detail"] == "failed to finalize upload"
        assert "database is down" not in finalize.text

        assert client.get(f"/v1/uploads/{upload_id}/progress").json() is None


def test_admin_janitor_and_session_listing() -> None:
    upload_id = _upload_id()
    with TestClient(app) as client:
        assert _put_chunk(client, upload_id, 0, 2, b"a", title="T", author="A").status_code == 202

        listing = client.get("/v1/admin/sessions")
        assert listing.status_code == 200
        assert upload_id in listing.json()["upload_ids"]

        sweep = client.post("/v1/admin/janitor")
        assert sweep.status_code == 200
        assert sweep.json()["status"] == "ok"
        assert sweep.json()["scanned"] >= 1

        assert client.get(f"/v1/uploads/{upload_id}/progress").json() is not None
        client.delete(f"/v1/uploads/{upload_id}")


def test_audit_logs_for_first_chunk_finalize_and_cleanup(caplog) -> None:
    _reset_state()
    caplog.set_level("INFO", logger="audiobook.audit")
    upload_id = _upload_id()
    headers = {"X-Request-ID": "req-audit"}
    with TestClient(app) as client:
        client.headers.update(headers)
        assert _put_chunk(client, upload_id, 0, 1, b"one", title="T", author="A").status_code == 202
        assert client.post(f"/v1/uploads/{upload_id}/finalize").status_code == 201
        assert client.delete(f"/v1/uploads/{upload_id}").status_code == 204

    events = _events_from_caplog(caplog, "audiobook.audit")
    actions = [event.get("action") for event in events]
    assert "upload_chunk_first" in actions
    assert "upload_finalize" in actions
    assert "upload_cleanup" in actions
    finalize_event = next(event for event in events if event.get("action") == "upload_finalize")
    assert finalize_event["request_id"] == "req-audit"
    assert finalize_event["upload_id"] == upload_id
    assert "trace_id" in finalize_event
