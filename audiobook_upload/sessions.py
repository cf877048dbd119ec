from __future__ import annotations

import base64
import json
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone

from fastapi import HTTPException

from audiobook_upload.config import settings
from audiobook_upload.eventlog import audit_event, log_event
from audiobook_upload.metrics import (
    bytes_received_total,
    chunk_write_latency_seconds,
    chunks_stored_total,
    duplicate_chunks_total,
    janitor_sessions_swept_total,
    janitor_sweeps_total,
    sessions_cleaned_total,
    sessions_created_total,
)
from audiobook_upload.session_store import KEY_MISSING, NO_EXPIRY, SessionStore

SESSION_KEY_PREFIX = "upload:session:"
CHUNK_KEY_PREFIX = "upload:chunk:"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def session_key(upload_id: str) -> str:
    return f"{SESSION_KEY_PREFIX}{upload_id}"


def chunk_key(upload_id: str, chunk_index: int) -> str:
    return f"{CHUNK_KEY_PREFIX}{upload_id}:{chunk_index}"


@dataclass
class CoverImage:
    filename: str
    content_type: str
    data: bytes


@dataclass
class BookMetadata:
    title: str
    author: str
    description: str | None = None
    cover: CoverImage | None = None

    def to_session_dict(self) -> dict:
        # Session records are JSON, so cover bytes travel as base64 text.
        payload: dict = {"title": self.title, "author": self.author}
        if self.description is not None:
            payload["description"] = self.description
        if self.cover is not None:
            payload["cover"] = {
                "filename": self.cover.filename,
                "content_type": self.cover.content_type,
                "data_b64": base64.b64encode(self.cover.data).decode("ascii"),
            }
        return payload

    @classmethod
    def from_session_dict(cls, payload: dict) -> "BookMetadata":
        cover = None
        cover_payload = payload.get("cover")
        if cover_payload and cover_payload.get("data_b64"):
            cover = CoverImage(
                filename=cover_payload.get("filename") or "cover",
                content_type=cover_payload.get("content_type") or "application/octet-stream",
                data=base64.b64decode(cover_payload["data_b64"].encode("ascii")),
            )
        return cls(
            title=payload.get("title", ""),
            author=payload.get("author", ""),
            description=payload.get("description"),
            cover=cover,
        )


@dataclass
class UploadSession:
    upload_id: str
    metadata: dict
    total_chunks: int
    uploaded_chunks: int = 0
    chunk_keys: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=lambda: _utc_now().isoformat())
    original_filename: str | None = None
    finalizing: bool = False

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"), sort_keys=True)

    @classmethod
    def from_json(cls, payload: bytes | str) -> "UploadSession":
        parsed = json.loads(payload)
        return cls(**parsed)

    def created_at_datetime(self) -> datetime:
        created = datetime.fromisoformat(self.created_at)
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return created

    def book_metadata(self) -> BookMetadata:
        return BookMetadata.from_session_dict(self.metadata)

    def record_chunk(self, key: str) -> bool:
        """Count ``key`` once; returns ``False`` when it was already counted."""
        if key in self.chunk_keys:
            return False
        self.chunk_keys.append(key)
        self.uploaded_chunks += 1
        return True

    def missing_chunks(self) -> list[int]:
        received = set(self.chunk_keys)
        return [idx for idx in range(self.total_chunks) if chunk_key(self.upload_id, idx) not in received]


@dataclass
class ChunkAck:
    success: bool
    message: str


@dataclass
class UploadProgress:
    uploaded_chunks: int
    total_chunks: int
    progress: float


@dataclass
class JanitorReport:
    scanned: int = 0
    expiry_assigned: int = 0
    unreadable: int = 0
    swept: int = 0


class UploadSessionManager:
    """Owns upload session lifecycle on top of a :class:`SessionStore`.

    The manager keeps no in-process state; every call round-trips through the
    store, so several server processes can share one store.
    """

    def __init__(
        self,
        store: SessionStore,
        session_ttl_seconds: int | None = None,
        chunk_ttl_seconds: int | None = None,
        stale_after_hours: float | None = None,
        scan_batch_size: int | None = None,
    ) -> None:
        self.store = store
        self.session_ttl_seconds = session_ttl_seconds or settings.session_ttl_seconds
        self.chunk_ttl_seconds = chunk_ttl_seconds or settings.chunk_ttl_seconds
        self.stale_after_hours = stale_after_hours or settings.stale_session_hours
        self.scan_batch_size = scan_batch_size or settings.scan_batch_size

    async def create_session(
        self, upload_id: str, total_chunks: int, metadata: dict, original_filename: str | None = None
    ) -> UploadSession:
        session = UploadSession(
            upload_id=upload_id,
            metadata=dict(metadata),
            total_chunks=total_chunks,
            original_filename=original_filename,
        )
        await self.store.set(session_key(upload_id), session.to_json(), self.session_ttl_seconds)
        sessions_created_total.inc()
        audit_event({"event": "session_created", "upload_id": upload_id, "total_chunks": total_chunks})
        return session

    async def get_session(self, upload_id: str) -> UploadSession | None:
        raw = await self.store.get(session_key(upload_id))
        if raw is None:
            return None
        return UploadSession.from_json(raw)

    async def store_chunk(self, upload_id: str, chunk_index: int, data: bytes) -> None:
        key = chunk_key(upload_id, chunk_index)
        start = time.perf_counter()
        await self.store.set(key, data, self.chunk_ttl_seconds)
        chunk_write_latency_seconds.observe(time.perf_counter() - start)

        counted = False

        def _record(raw: bytes) -> bytes:
            nonlocal counted
            session = UploadSession.from_json(raw)
            if chunk_index < 0 or chunk_index >= session.total_chunks:
                raise HTTPException(status_code=400, detail="chunk index out of bounds")
            counted = session.record_chunk(key)
            return session.to_json().encode("utf-8")

        try:
            updated = await self.store.update(session_key(upload_id), _record, self.session_ttl_seconds)
        except HTTPException:
            await self.store.delete(key)
            raise
        if updated is None:
            await self.store.delete(key)
            raise HTTPException(status_code=400, detail="upload session not found")

        chunks_stored_total.inc()
        bytes_received_total.inc(len(data))
        if not counted:
            duplicate_chunks_total.inc()
            log_event({"event": "chunk_retry", "upload_id": upload_id, "chunk_index": chunk_index})

    async def get_all_chunks(self, upload_id: str) -> list[bytes]:
        session = await self.get_session(upload_id)
        if session is None:
            raise HTTPException(status_code=400, detail="upload session not found")

        chunks: list[bytes] = []
        for idx in range(session.total_chunks):
            data = await self.store.get(chunk_key(upload_id, idx))
            if data is None:
                raise HTTPException(status_code=400, detail=f"chunk {idx} not found for upload {upload_id}")
            chunks.append(data)
        return chunks

    async def update_session_metadata(self, upload_id: str, metadata: dict) -> None:
        def _merge(raw: bytes) -> bytes:
            session = UploadSession.from_json(raw)
            session.metadata = {**session.metadata, **metadata}
            return session.to_json().encode("utf-8")

        updated = await self.store.update(session_key(upload_id), _merge, self.session_ttl_seconds)
        if updated is None:
            raise HTTPException(status_code=400, detail="upload session not found")

    async def is_upload_complete(self, upload_id: str) -> bool:
        session = await self.get_session(upload_id)
        if session is None:
            return False
        return session.uploaded_chunks == session.total_chunks

    async def claim_for_finalize(self, upload_id: str) -> UploadSession:
        """Mark the session as finalizing; only one caller wins the claim."""
        claimed: UploadSession | None = None

        def _claim(raw: bytes) -> bytes:
            nonlocal claimed
            session = UploadSession.from_json(raw)
            if session.finalizing:
                raise HTTPException(status_code=400, detail="finalize already in progress")
            session.finalizing = True
            claimed = session
            return session.to_json().encode("utf-8")

        updated = await self.store.update(session_key(upload_id), _claim, self.session_ttl_seconds)
        if updated is None or claimed is None:
            raise HTTPException(status_code=400, detail="upload session not found")
        return claimed

    async def extend_session_ttl(self, upload_id: str) -> bool:
        return await self.store.expire(session_key(upload_id), self.session_ttl_seconds)

    async def cleanup_session(self, upload_id: str) -> bool:
        session = await self.get_session(upload_id)
        if session is None:
            return False
        if session.chunk_keys:
            await self.store.delete(*session.chunk_keys)
        await self.store.delete(session_key(upload_id))
        sessions_cleaned_total.inc()
        audit_event({"event": "session_cleaned", "upload_id": upload_id, "chunks_deleted": len(session.chunk_keys)})
        return True

    async def handle_chunk_upload(
        self,
        upload_id: str,
        chunk_index: int,
        total_chunks: int,
        data: bytes,
        metadata: BookMetadata | None = None,
        original_filename: str | None = None,
    ) -> ChunkAck:
        session = await self.get_session(upload_id)
        metadata_for_session = metadata.to_session_dict() if metadata is not None else None

        if session is None:
            if chunk_index != 0:
                raise HTTPException(
                    status_code=400,
                    detail="upload session not found, cannot upload chunk without existing session",
                )
            if metadata_for_session is None:
                raise HTTPException(status_code=400, detail="metadata is required for the first chunk")
            await self.create_session(upload_id, total_chunks, metadata_for_session, original_filename)
        else:
            if session.total_chunks != total_chunks:
                raise HTTPException(
                    status_code=400,
                    detail=f"total_chunks mismatch: session declares {session.total_chunks}, got {total_chunks}",
                )
            if metadata_for_session is not None and chunk_index == 0:
                await self.update_session_metadata(upload_id, metadata_for_session)

        await self.store_chunk(upload_id, chunk_index, data)
        await self.extend_session_ttl(upload_id)
        return ChunkAck(success=True, message=f"Chunk {chunk_index + 1}/{total_chunks} uploaded successfully")

    async def get_upload_progress(self, upload_id: str) -> UploadProgress | None:
        session = await self.get_session(upload_id)
        if session is None:
            return None
        progress = 0.0
        if session.total_chunks > 0:
            progress = round(session.uploaded_chunks / session.total_chunks * 100, 2)
        return UploadProgress(
            uploaded_chunks=session.uploaded_chunks,
            total_chunks=session.total_chunks,
            progress=progress,
        )

    async def get_missing_chunks(self, upload_id: str) -> list[int] | None:
        session = await self.get_session(upload_id)
        if session is None:
            return None
        return session.missing_chunks()

    async def list_active_sessions(self) -> list[str]:
        upload_ids: list[str] = []
        cursor = 0
        while True:
            cursor, keys = await self.store.scan(cursor, f"{SESSION_KEY_PREFIX}*", self.scan_batch_size)
            upload_ids.extend(key.removeprefix(SESSION_KEY_PREFIX) for key in keys)
            if cursor == 0:
                break
        return upload_ids

    async def cleanup_expired_sessions(self, now: datetime | None = None) -> JanitorReport:
        """Sweep session keys, assigning missing expiries and removing stale sessions.

        Staleness is judged from ``created_at`` alone, independent of the key's
        TTL. The sweep only deletes or sets expiry, so a session that vanishes
        between scan and inspection is skipped.
        """
        stale_before = (now or _utc_now()) - timedelta(hours=self.stale_after_hours)
        report = JanitorReport()
        cursor = 0
        while True:
            cursor, keys = await self.store.scan(cursor, f"{SESSION_KEY_PREFIX}*", self.scan_batch_size)
            for key in keys:
                report.scanned += 1
                ttl = await self.store.ttl(key)
                if ttl == KEY_MISSING:
                    continue
                if ttl == NO_EXPIRY:
                    if await self.store.expire(key, self.session_ttl_seconds):
                        report.expiry_assigned += 1

                raw = await self.store.get(key)
                if raw is None:
                    continue
                try:
                    created_at = UploadSession.from_json(raw).created_at_datetime()
                except (TypeError, ValueError) as exc:
                    report.unreadable += 1
                    log_event({"event": "janitor_unreadable_session", "key": key, "detail": str(exc)})
                    continue

                if created_at < stale_before and await self.cleanup_session(key.removeprefix(SESSION_KEY_PREFIX)):
                    report.swept += 1
            if cursor == 0:
                break

        janitor_sweeps_total.inc()
        janitor_sessions_swept_total.inc(report.swept)
        audit_event({"event": "janitor_sweep", **asdict(report)})
        return report
