import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import asdict

from fastapi import FastAPI, File, Form, HTTPException, Request, Response, UploadFile
from fastapi.responses import JSONResponse

from audiobook_upload.catalog import BookCatalog
from audiobook_upload.config import settings
from audiobook_upload.db import create_schema
from audiobook_upload.eventlog import audit_event, log_event, trace_id
from audiobook_upload.metrics import http_request_duration_seconds, metrics_response
from audiobook_upload.orchestrator import UploadOrchestrator
from audiobook_upload.schemas import (
    ActiveSessionsResponse,
    BookRecord,
    ErrorResponse,
    JanitorReportResponse,
    MissingChunksResponse,
    UploadChunkResponse,
    UploadProgressResponse,
)
from audiobook_upload.session_store import build_session_store
from audiobook_upload.sessions import CoverImage, UploadSessionManager
from audiobook_upload.storage import build_object_storage
from audiobook_upload.tracing import setup_tracing

session_store = build_session_store()
session_manager = UploadSessionManager(session_store)
orchestrator = UploadOrchestrator(session_manager, BookCatalog(build_object_storage()))


@asynccontextmanager
async def lifespan(_: FastAPI):
    stop_event = asyncio.Event()
    tasks: list[asyncio.Task] = []

    async def _janitor_loop() -> None:
        while not stop_event.is_set():
            try:
                await session_manager.cleanup_expired_sessions()
            except Exception as exc:
                log_event({"event": "janitor_error", "detail": str(exc), "error_class": "maintenance_error"})
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=max(1, settings.janitor_interval_seconds))
            except asyncio.TimeoutError:
                pass

    if settings.database_auto_create:
        create_schema()
    if settings.janitor_enabled:
        tasks.append(asyncio.create_task(_janitor_loop()))
    yield
    stop_event.set()
    for task in tasks:
        await task
    await session_store.close()


app = FastAPI(title=settings.app_name, lifespan=lifespan)
setup_tracing(app)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _upload_id(request: Request) -> str | None:
    return request.path_params.get("upload_id")


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None and hasattr(route, "path"):
        return str(route.path)
    return request.url.path


def _error_code_for_status(status_code: int) -> str:
    mapping = {
        400: "bad_request",
        404: "not_found",
        413: "payload_too_large",
        422: "validation_error",
        500: "internal_error",
    }
    return mapping.get(status_code, f"http_{status_code}")


COMMON_ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Upload protocol error"},
    500: {"model": ErrorResponse, "description": "Internal server error"},
}


@app.middleware("http")
async def request_context_and_logging(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    start = time.perf_counter()

    response = await call_next(request)
    duration_ms = round((time.perf_counter() - start) * 1000, 2)
    response.headers["X-Request-ID"] = request_id
    response.headers["X-App-Version"] = settings.app_version
    http_request_duration_seconds.labels(
        method=request.method,
        route=_route_label(request),
        status_code=str(response.status_code),
    ).observe(duration_ms / 1000.0)

    log_event(
        {
            "event": "request_completed",
            "request_id": request_id,
            "upload_id": _upload_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
        }
    )
    return response


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    log_event(
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "upload_id": _upload_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": exc.status_code,
            "error_class": "client_error" if 400 <= exc.status_code < 500 else "server_error",
            "detail": str(exc.detail),
        }
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": str(exc.detail),
            "error_code": _error_code_for_status(exc.status_code),
            "request_id": _request_id(request),
            "upload_id": _upload_id(request),
            "trace_id": trace_id(),
        },
        headers=exc.headers or {},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    log_event(
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "upload_id": _upload_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": 500,
            "error_class": "unhandled_exception",
            "detail": str(exc),
        }
    )
    return JSONResponse(
        status_code=500,
        content={
            "detail": "internal server error",
            "error_code": "internal_error",
            "request_id": _request_id(request),
            "upload_id": _upload_id(request),
            "trace_id": trace_id(),
        },
    )


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/version")
def version() -> dict[str, str]:
    return {
        "app_name": settings.app_name,
        "app_version": settings.app_version,
        "session_store_backend": settings.session_store_backend,
        "storage_backend": settings.storage_backend,
    }


@app.get("/metrics")
def metrics() -> Response:
    return metrics_response()


@app.put(
    "/v1/uploads/{upload_id}/chunks/{chunk_index}",
    response_model=UploadChunkResponse,
    status_code=202,
    responses={**COMMON_ERROR_RESPONSES, 413: {"model": ErrorResponse, "description": "Chunk too large"}},
)
async def upload_chunk(
    request: Request,
    upload_id: str,
    chunk_index: int,
    total_chunks: int = Form(...),
    chunk: UploadFile | None = File(default=None),
    title: str | None = Form(default=None),
    author: str | None = Form(default=None),
    description: str | None = Form(default=None),
    original_filename: str | None = Form(default=None),
    cover: UploadFile | None = File(default=None),
) -> UploadChunkResponse:
    data = await chunk.read() if chunk is not None else b""
    cover_image = None
    if cover is not None:
        cover_bytes = await cover.read()
        if cover_bytes:
            cover_image = CoverImage(
                filename=cover.filename or "cover",
                content_type=cover.content_type or "application/octet-stream",
                data=cover_bytes,
            )

    ack = await orchestrator.upload_chunk(
        upload_id,
        chunk_index,
        total_chunks,
        data,
        title=title,
        author=author,
        description=description,
        original_filename=original_filename,
        cover=cover_image,
    )
    if chunk_index == 0:
        audit_event(
            {
                "action": "upload_chunk_first",
                "request_id": _request_id(request),
                "upload_id": upload_id,
                "total_chunks": total_chunks,
                "has_cover": cover_image is not None,
            }
        )
    return UploadChunkResponse(**asdict(ack))


@app.post(
    "/v1/uploads/{upload_id}/finalize",
    response_model=BookRecord,
    status_code=201,
    responses={**COMMON_ERROR_RESPONSES},
)
async def finalize_upload(request: Request, upload_id: str) -> BookRecord:
    book = await orchestrator.finalize_upload(upload_id)
    audit_event(
        {
            "action": "upload_finalize",
            "request_id": _request_id(request),
            "upload_id": upload_id,
            "book_id": book.id,
            "audio_size": book.audio_size,
        }
    )
    return book


@app.delete("/v1/uploads/{upload_id}", status_code=204)
async def cleanup_upload(request: Request, upload_id: str) -> Response:
    await orchestrator.cleanup_upload(upload_id)
    audit_event({"action": "upload_cleanup", "request_id": _request_id(request), "upload_id": upload_id})
    return Response(status_code=204)


@app.get("/v1/uploads/{upload_id}/progress", response_model=UploadProgressResponse | None)
async def upload_progress(upload_id: str) -> UploadProgressResponse | None:
    progress = await orchestrator.get_progress(upload_id)
    if progress is None:
        return None
    return UploadProgressResponse(**asdict(progress))


@app.get(
    "/v1/uploads/{upload_id}/missing-chunks",
    response_model=MissingChunksResponse,
    responses={404: {"model": ErrorResponse, "description": "Upload session not found"}},
)
async def missing_chunks(upload_id: str) -> MissingChunksResponse:
    session = await session_manager.get_session(upload_id)
    if session is None:
        raise HTTPException(status_code=404, detail="upload session not found")
    return MissingChunksResponse(
        upload_id=upload_id,
        uploaded_chunks=session.uploaded_chunks,
        total_chunks=session.total_chunks,
        missing_chunk_indexes=session.missing_chunks(),
    )


@app.post("/v1/admin/janitor", response_model=JanitorReportResponse)
async def run_janitor(request: Request) -> JanitorReportResponse:
    report = await session_manager.cleanup_expired_sessions()
    audit_event({"action": "janitor_run", "request_id": _request_id(request), **asdict(report)})
    return JanitorReportResponse(status="ok", **asdict(report))


@app.get("/v1/admin/sessions", response_model=ActiveSessionsResponse)
async def active_sessions() -> ActiveSessionsResponse:
    upload_ids = await session_manager.list_active_sessions()
    return ActiveSessionsResponse(upload_ids=sorted(upload_ids))
