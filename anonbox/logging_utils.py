"""
Structured JSON logging.

One "Request completed" line per HTTP request, carrying the request id,
the client address and, for submission routes, what happened to the
submission. Every other log line written while the request is in flight
picks up the same request id.
"""

import logging
import re
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from anonbox.enrichment import UNKNOWN, extract_client_ip
from anonbox.metrics import record_http_request


REQUEST_ID_HEADER = "X-Request-ID"

# Ids handed in by a proxy are reused only when they look like ids
INBOUND_REQUEST_ID = re.compile(r"^[A-Za-z0-9._-]{1,64}$")

# Request id of the request being handled, for log lines outside the middleware
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def get_request_id() -> Optional[str]:
    return request_id_ctx.get()


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Adds `ts` (ISO-8601, UTC, milliseconds), `level` and `request_id`."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            created = datetime.fromtimestamp(record.created, tz=timezone.utc)
            log_record['ts'] = created.strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

        if 'request_id' not in log_record:
            req_id = request_id_ctx.get()
            if req_id:
                log_record['request_id'] = req_id


def setup_logging(log_level: str = "INFO"):
    """
    Send every log line, uvicorn's included, to stdout as JSON.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logger = logging.getLogger()
    logger.setLevel(log_level.upper())
    logger.handlers = []

    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(CustomJsonFormatter('%(ts)s %(level)s %(name)s %(message)s'))
    logger.addHandler(json_handler)

    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers = []
        uvicorn_logger.addHandler(json_handler)
        uvicorn_logger.propagate = False

    # The middleware below writes the access log
    logging.getLogger("uvicorn.access").disabled = True

    # httpx logs every geolocation and email request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return logger


def request_id_for(request: Request) -> str:
    """Reuse the caller's X-Request-ID when it is a plausible id, else mint one."""
    inbound = request.headers.get(REQUEST_ID_HEADER)
    if inbound and INBOUND_REQUEST_ID.match(inbound):
        return inbound
    return uuid.uuid4().hex


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs every HTTP request as one JSON line and records HTTP metrics.

    Log keys:
    - request_id: also returned in the X-Request-ID response header
    - method, path, status, latency_ms
    - client_ip: first X-Forwarded-For hop, else the peer address

    Submission routes add kind, result and, once a record is stored,
    message_id, location and source.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request_id_for(request)
        request.state.request_id = request_id

        token = request_id_ctx.set(request_id)
        start_time = time.time()

        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id

            latency_seconds = time.time() - start_time

            if request.url.path != "/metrics":
                record_http_request(
                    method=request.method,
                    path=request.url.path,
                    status=response.status_code,
                    latency_seconds=latency_seconds
                )

            peer = request.client.host if request.client else None
            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(latency_seconds * 1000, 2),
                "client_ip": extract_client_ip(request.headers, peer).value_or(UNKNOWN),
            }
            log_data.update(getattr(request.state, "submission_log_data", {}))

            logger = logging.getLogger("anonbox.requests")

            if response.status_code >= 500:
                logger.error("Request completed", extra=log_data)
            elif response.status_code >= 400:
                logger.warning("Request completed", extra=log_data)
            else:
                logger.info("Request completed", extra=log_data)

            return response
        finally:
            request_id_ctx.reset(token)


def log_submission_data(request: Request, kind: str, result: str, record=None):
    """
    Attach what happened to a submission to the request state, for the
    middleware's request log line.

    Args:
        request: FastAPI request object
        kind: "message" or "abandoned"
        result: created, rejected, skipped or error
        record: The stored MessageRecord or AbandonedMessageRecord, if any
    """
    submission_data = {"kind": kind, "result": result}
    if record is not None:
        submission_data.update(
            message_id=record.id,
            location=record.location,
            source=record.source,
        )
    request.state.submission_log_data = submission_data
