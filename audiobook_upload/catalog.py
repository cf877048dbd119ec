import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy.orm import Session

from audiobook_upload.config import settings
from audiobook_upload.db import SessionLocal
from audiobook_upload.eventlog import log_event
from audiobook_upload.models import Book
from audiobook_upload.schemas import BookRecord
from audiobook_upload.sessions import CoverImage
from audiobook_upload.storage import ObjectStorage, safe_object_name


@dataclass
class AudioFile:
    data: bytes
    filename: str
    mime_type: str
    size: int


@dataclass
class BookDraft:
    title: str
    author: str
    audio: AudioFile
    description: str | None = None
    cover: CoverImage | None = None


class EntityCreator(Protocol):
    def create_book(self, draft: BookDraft) -> BookRecord: ...


class BookCatalog:
    """Persists an assembled upload as a book: objects first, then the row."""

    def __init__(self, storage: ObjectStorage, session_factory: Callable[[], Session] = SessionLocal) -> None:
        self.storage = storage
        self.session_factory = session_factory

    def _object_key(self, prefix: str, filename: str, stamp: int) -> str:
        return f"{prefix}/{stamp}-{safe_object_name(filename)}"

    def create_book(self, draft: BookDraft) -> BookRecord:
        stamp = int(time.time() * 1000)
        stored_keys: list[str] = []
        try:
            cover_key = None
            if draft.cover is not None:
                cover_key = self.storage.put_object(
                    self._object_key(settings.cover_prefix, draft.cover.filename, stamp),
                    draft.cover.data,
                    draft.cover.content_type,
                )
                stored_keys.append(cover_key)

            audio_key = self.storage.put_object(
                self._object_key(settings.audio_prefix, draft.audio.filename, stamp),
                draft.audio.data,
                draft.audio.mime_type,
            )
            stored_keys.append(audio_key)

            with self.session_factory() as db:
                book = Book(
                    title=draft.title,
                    author=draft.author,
                    description=draft.description,
                    audio_key=audio_key,
                    audio_filename=draft.audio.filename,
                    audio_mime_type=draft.audio.mime_type,
                    audio_size=draft.audio.size,
                    cover_key=cover_key,
                )
                db.add(book)
                db.commit()
                db.refresh(book)
                return BookRecord.model_validate(book)
        except Exception:
            self._discard_objects(stored_keys)
            raise

    def _discard_objects(self, keys: list[str]) -> None:
        for key in keys:
            try:
                self.storage.delete_key(key)
            except Exception as exc:
                log_event(
                    {"event": "object_discard_error", "key": key, "detail": str(exc), "error_class": "storage_error"}
                )
