import uuid
from datetime import datetime, timezone

from sqlalchemy import BigInteger, DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from audiobook_upload.db import Base


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Book(Base):
    __tablename__ = "books"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    title: Mapped[str] = mapped_column(Text, nullable=False)
    author: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    audio_key: Mapped[str] = mapped_column(Text, nullable=False)
    audio_filename: Mapped[str] = mapped_column(Text, nullable=False)
    audio_mime_type: Mapped[str] = mapped_column(String(64), nullable=False)
    audio_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    cover_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
