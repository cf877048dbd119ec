import asyncio
import time

from fastapi import HTTPException

from audiobook_upload.catalog import AudioFile, BookDraft, EntityCreator
from audiobook_upload.config import settings
from audiobook_upload.eventlog import log_event
from audiobook_upload.metrics import finalize_failures_total, finalize_latency_seconds, sessions_finalized_total
from audiobook_upload.schemas import BookRecord
from audiobook_upload.sessions import BookMetadata, ChunkAck, CoverImage, UploadProgress, UploadSessionManager
from audiobook_upload.tracing import tracer

AUDIO_MIME_TYPES = {
    "mp3": "audio/mpeg",
    "mp4": "audio/mp4",
    "m4a": "audio/mp4",
    "ogg": "audio/ogg",
    "wav": "audio/wav",
    "flac": "audio/flac",
    "aac": "audio/aac",
}
DEFAULT_AUDIO_MIME_TYPE = "audio/mpeg"


def audio_mime_type(filename: str) -> str:
    extension = filename.rsplit(".", 1)[-1].lower()
    return AUDIO_MIME_TYPES.get(extension, DEFAULT_AUDIO_MIME_TYPE)


def _format_indexes(indexes: list[int], limit: int = 20) -> str:
    shown = ", ".join(str(idx) for idx in indexes[:limit])
    if len(indexes) > limit:
        shown += f", ... ({len(indexes) - limit} more)"
    return shown


class UploadOrchestrator:
    def __init__(self, manager: UploadSessionManager, creator: EntityCreator) -> None:
        self.manager = manager
        self.creator = creator

    async def upload_chunk(
        self,
        upload_id: str,
        chunk_index: int,
        total_chunks: int,
        chunk: bytes | None,
        title: str | None = None,
        author: str | None = None,
        description: str | None = None,
        original_filename: str | None = None,
        cover: CoverImage | None = None,
    ) -> ChunkAck:
        if not upload_id or not upload_id.strip():
            raise HTTPException(status_code=400, detail="upload_id is required")
        if not chunk:
            raise HTTPException(status_code=400, detail="chunk file is required")
        if total_chunks < 1 or total_chunks > settings.max_total_chunks:
            raise HTTPException(status_code=400, detail=f"total_chunks must be between 1 and {settings.max_total_chunks}")
        if chunk_index < 0 or chunk_index >= total_chunks:
            raise HTTPException(status_code=400, detail="chunk index out of bounds")
        if len(chunk) > settings.max_chunk_size_bytes:
            raise HTTPException(
                status_code=413, detail=f"chunk exceeds maximum size of {settings.max_chunk_size_bytes} bytes"
            )

        metadata = None
        if chunk_index == 0:
            if not title or not author:
                raise HTTPException(status_code=400, detail="title and author are required for the first chunk")
            metadata = BookMetadata(title=title, author=author, description=description, cover=cover)

        return await self.manager.handle_chunk_upload(
            upload_id,
            chunk_index,
            total_chunks,
            chunk,
            metadata=metadata,
            original_filename=original_filename or None,
        )

    async def finalize_upload(self, upload_id: str) -> BookRecord:
        """Assemble a complete upload and create its book.

        The session is removed once assembly starts, whether or not the book is
        created; a failed finalize means the client restarts from chunk 0. An
        incomplete session is rejected before that point and stays resumable. A
        second finalize racing the first is refused by the claim on the session.
        """
        session = await self.manager.get_session(upload_id)
        if session is None:
            raise HTTPException(status_code=400, detail="upload session not found")
        if not await self.manager.is_upload_complete(upload_id):
            raise HTTPException(
                status_code=400,
                detail=(
                    f"incomplete upload: {session.uploaded_chunks}/{session.total_chunks} chunks received, "
                    f"missing chunks: {_format_indexes(session.missing_chunks())}"
                ),
            )

        session = await self.manager.claim_for_finalize(upload_id)
        start = time.perf_counter()
        try:
            with tracer().start_as_current_span("finalize_upload") as span:
                span.set_attribute("upload.id", upload_id)
                span.set_attribute("upload.total_chunks", session.total_chunks)
                chunks = await self.manager.get_all_chunks(upload_id)
                assembled = b"".join(chunks)
                filename = session.original_filename or settings.default_audio_filename
                metadata = session.book_metadata()
                draft = BookDraft(
                    title=metadata.title,
                    author=metadata.author,
                    description=metadata.description,
                    audio=AudioFile(
                        data=assembled,
                        filename=filename,
                        mime_type=audio_mime_type(filename),
                        size=len(assembled),
                    ),
                    cover=metadata.cover,
                )
                book = await asyncio.to_thread(self.creator.create_book, draft)
        except HTTPException as exc:
            finalize_failures_total.inc()
            log_event({"event": "finalize_failed", "upload_id": upload_id, "detail": str(exc.detail)})
            raise
        except Exception as exc:
            finalize_failures_total.inc()
            log_event(
                {"event": "finalize_failed", "upload_id": upload_id, "detail": str(exc), "error_class": "creation_error"}
            )
            raise HTTPException(status_code=500, detail="failed to finalize upload") from exc
        finally:
            await self.manager.cleanup_session(upload_id)

        sessions_finalized_total.inc()
        finalize_latency_seconds.observe(time.perf_counter() - start)
        return book

    async def cleanup_upload(self, upload_id: str) -> None:
        await self.manager.cleanup_session(upload_id)

    async def get_progress(self, upload_id: str) -> UploadProgress | None:
        return await self.manager.get_upload_progress(upload_id)
