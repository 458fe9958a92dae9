"""
Flask hooks that give every gallery request an id, a log line and metrics.

The request id comes from X-Request-ID when the caller sends one and is
echoed back on the response. Paths are collapsed (item ids to ":id",
principal addresses to ":address") before they become metric labels.
"""

import logging
import re
import time
import uuid

from flask import Flask, Response, g, request

from monitoring.logging import clear_request_context, set_request_context
from monitoring.metrics import metrics

logger = logging.getLogger("sealedgallery.request")

_ADDRESS_SEGMENT = re.compile(r"^0x[0-9a-fA-F]{40}$")


def _normalize_path(path: str) -> str:
    segments = []
    for segment in path.strip("/").split("/"):
        if segment.isdigit():
            segment = ":id"
        elif _ADDRESS_SEGMENT.match(segment):
            segment = ":address"
        segments.append(segment)
    return "/" + "/".join(segments)


def _log_level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


def setup_request_logging(app: Flask) -> None:
    """Register before/after/teardown hooks on `app`."""

    @app.before_request
    def start_request():
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8]
        g.request_started = time.perf_counter()
        set_request_context(request_id=g.request_id, method=request.method, path=request.path)
        metrics.increment_gauge("http_requests_active")

    @app.after_request
    def finish_request(response: Response) -> Response:
        started = g.get("request_started")
        elapsed_ms = (time.perf_counter() - started) * 1000 if started is not None else 0.0
        route = _normalize_path(request.path)
        status = response.status_code

        metrics.increment(
            "http_requests_total",
            labels={"method": request.method, "path": route, "status": str(status)},
        )
        metrics.timing("http_request_duration_ms", elapsed_ms, labels={"method": request.method, "path": route})
        logger.log(
            _log_level_for(status),
            "%s %s -> %d",
            request.method,
            request.path,
            status,
            extra={"status_code": status, "duration_ms": round(elapsed_ms, 2)},
        )

        if "request_id" in g:
            response.headers["X-Request-ID"] = g.request_id
        return response

    @app.teardown_request
    def end_request(exception=None):
        if exception is not None:
            logger.error("Unhandled error in %s %s", request.method, request.path, exc_info=exception)
        clear_request_context()
        metrics.decrement_gauge("http_requests_active")
