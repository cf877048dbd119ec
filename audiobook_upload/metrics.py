from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.responses import Response

chunks_stored_total = Counter("chunks_stored_total", "Total chunks written to the session store")
duplicate_chunks_total = Counter("duplicate_chunks_total", "Chunk retries that overwrote an already counted index")
bytes_received_total = Counter("bytes_received_total", "Total chunk bytes received")
sessions_created_total = Counter("upload_sessions_created_total", "Total upload sessions created")
sessions_finalized_total = Counter("upload_sessions_finalized_total", "Total uploads assembled into a book")
finalize_failures_total = Counter("upload_finalize_failures_total", "Total finalize attempts that failed")
sessions_cleaned_total = Counter("upload_sessions_cleaned_total", "Total upload sessions deleted")
janitor_sweeps_total = Counter("janitor_sweeps_total", "Total janitor sweeps run")
janitor_sessions_swept_total = Counter("janitor_sessions_swept_total", "Stale sessions removed by the janitor")

chunk_write_latency_seconds = Histogram("chunk_write_latency_seconds", "Session store chunk write latency in seconds")
finalize_latency_seconds = Histogram("finalize_latency_seconds", "Upload assembly and book creation latency in seconds")
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "route", "status_code"],
)


def metrics_response() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
