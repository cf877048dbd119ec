from datetime import datetime

from pydantic import BaseModel, ConfigDict


class UploadChunkResponse(BaseModel):
    success: bool
    message: str


class UploadProgressResponse(BaseModel):
    uploaded_chunks: int
    total_chunks: int
    progress: float


class MissingChunksResponse(BaseModel):
    upload_id: str
    uploaded_chunks: int
    total_chunks: int
    missing_chunk_indexes: list[int]


class BookRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    author: str
    description: str | None = None
    audio_key: str
    audio_filename: str
    audio_mime_type: str
    audio_size: int
    cover_key: str | None = None
    created_at: datetime


class JanitorReportResponse(BaseModel):
    status: str
    scanned: int
    expiry_assigned: int
    unreadable: int
    swept: int


class ErrorResponse(BaseModel):
    detail: str
    error_code: str
    request_id: str | None = None
    upload_id: str | None = None


class ActiveSessionsResponse(BaseModel):
    upload_ids: list[str]
