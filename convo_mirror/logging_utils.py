"""
Structured JSON logging.

Every record carries `ts`, `level` and the current `request_id`. The request
middleware writes one summary line per request; webhook and backfill routes
attach their outcome to that line through `request.state`.
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from convo_mirror.metrics import record_http_request
from convo_mirror.utils import isoformat_ms, utcnow


REQUEST_ID_HEADER = "X-Request-ID"

request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

access_logger = logging.getLogger("convo_mirror.requests")


def get_request_id() -> Optional[str]:
    return request_id_ctx.get()


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding an ISO-8601 `ts`, `level` and the request id."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record.setdefault("ts", isoformat_ms(utcnow()))
        log_record["level"] = record.levelname

        # Background tasks run after the response, so the id may be gone
        if "request_id" not in log_record:
            req_id = get_request_id()
            if req_id:
                log_record["request_id"] = req_id


def setup_logging(log_level: str = "INFO"):
    """
    Route the root logger and Uvicorn's loggers through one JSON handler.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = []

    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(CustomJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))
    root.addHandler(json_handler)

    for logger_name in ("uvicorn", "uvicorn.error"):
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers = [json_handler]
        uvicorn_logger.propagate = False

    # The middleware below replaces the access log
    logging.getLogger("uvicorn.access").disabled = True

    return root


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One structured log line and one metrics sample per HTTP request.

    Log keys: ts, level, request_id, method, path, status, latency_ms.

    Webhook requests add result, dup and, when the event was parsed,
    event_type, message_id and conversation_id. The result is one of
    accepted, duplicate, conflict, ignored, invalid_signature,
    validation_error or misconfigured.

    An inbound X-Request-ID is reused so provider retries can be correlated.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id
            latency_seconds = time.perf_counter() - start_time

            if request.url.path != "/metrics":
                record_http_request(
                    method=request.method,
                    path=request.url.path,
                    status=response.status_code,
                    latency_seconds=latency_seconds,
                )

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(latency_seconds * 1000, 2),
            }
            log_data.update(getattr(request.state, "webhook_log_data", {}))

            if response.status_code >= 500:
                access_logger.error("Request completed", extra=log_data)
            elif response.status_code >= 400:
                access_logger.warning("Request completed", extra=log_data)
            else:
                access_logger.info("Request completed", extra=log_data)

            return response
        finally:
            request_id_ctx.reset(token)


def log_webhook_data(
    request: Request,
    result: str,
    message_id: Optional[str] = None,
    event_type: Optional[str] = None,
    conversation_id: Optional[str] = None,
    dup: bool = False,
):
    """Attach the webhook outcome to the request's summary log line."""
    webhook_data = {"result": result, "dup": dup}
    for key, value in (
        ("event_type", event_type),
        ("message_id", message_id),
        ("conversation_id", conversation_id),
    ):
        if value is not None:
            webhook_data[key] = value

    request.state.webhook_log_data = webhook_data
