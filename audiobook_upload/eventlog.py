import json
import logging

from opentelemetry import trace


def _json_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    return logger


request_logger = _json_logger("audiobook.request")
audit_logger = _json_logger("audiobook.audit")


def trace_id() -> str | None:
    span_context = trace.get_current_span().get_span_context()
    if not span_context or not span_context.is_valid:
        return None
    return format(span_context.trace_id, "032x")


def log_event(payload: dict) -> None:
    payload.setdefault("trace_id", trace_id())
    request_logger.info(json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str))


def audit_event(payload: dict) -> None:
    payload.setdefault("event", "audit")
    payload.setdefault("trace_id", trace_id())
    audit_logger.info(json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str))
