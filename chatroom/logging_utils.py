import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable

from fastapi import Request, Response

from .config import settings
from .metrics import inc_http_request, observe_latency_ms


logger = logging.getLogger("chatroom")
logger.setLevel(settings.LOG_LEVEL)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setLevel(settings.LOG_LEVEL)
    logger.addHandler(handler)


def iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def log_event(level: int, event: str, **fields: Any) -> None:
    """Emit one JSON log line with a timestamp, level and event name."""
    if not logger.isEnabledFor(level):
        return
    record = {
        "ts": iso_now(),
        "level": logging.getLevelName(level).lower(),
        "event": event,
    }
    record.update(fields)
    logger.log(level, json.dumps(record, default=str))


def route_label(request: Request, status_code: int) -> str:
    """Route template for metric labels, so ``/messages/7`` counts as ``/messages/{message_id}``."""
    path = getattr(request.scope.get("route"), "path", None)
    if path:
        return path
    if status_code == 404:
        return "<unmatched>"
    return request.url.path


async def logging_middleware(request: Request, call_next: Callable) -> Response:
    request_id = str(uuid.uuid4())
    start = time.perf_counter()

    request.state.request_id = request_id
    request.state.log_extra = {}

    response: Response
    try:
        response = await call_next(request)
    except Exception:
        latency_ms = (time.perf_counter() - start) * 1000.0
        log_event(
            logging.ERROR,
            "http_request",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status=500,
            latency_ms=round(latency_ms, 2),
        )
        raise

    latency_ms = (time.perf_counter() - start) * 1000.0
    status_code = response.status_code

    inc_http_request(route_label(request, status_code), status_code)
    observe_latency_ms(latency_ms)

    log = {
        "request_id": request_id,
        "method": request.method,
        "path": request.url.path,
        "status": status_code,
        "latency_ms": round(latency_ms, 2),
    }

    # handlers may attach extra fields (e.g. message id, operation)
    if isinstance(getattr(request.state, "log_extra", None), dict):
        log.update(request.state.log_extra)

    log_event(logging.INFO, "http_request", **log)
    return response
