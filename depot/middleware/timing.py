"""
Request timing middleware.

Records request duration and logs slow requests together with the sync
context of the process (local / shared mode, unacknowledged writes).

Response headers:
    X-Request-ID           echoed or generated
    X-Request-Duration-Ms  wall time of the request
    X-Sync-Mode            "local" or "shared"
    X-Sync-Pending         writes still waiting for the shared backend
                           (only while there are any)
"""

import logging
import time
import uuid

from flask import Flask, current_app, g, request

logger = logging.getLogger(__name__)

# Health checks are polled constantly; no per-request log lines for them
_SKIP_LOG = frozenset({"/api/v1/health", "/api/v1/health/ready"})

DEFAULT_SLOW_REQUEST_MS = 1000


def _sync_context() -> dict:
    runtime = current_app.extensions.get("depot")
    if runtime is None:
        return {}
    pending = sum(len(ids) for ids in runtime.reconciler.pending().values())
    return {"sync_mode": runtime.mode, "client_id": runtime.reconciler.client_id, "pending": pending}


def init_request_timing(app: Flask):
    """Register before/after hooks for request timing."""
    slow_ms = app.config.get("SLOW_REQUEST_MS", DEFAULT_SLOW_REQUEST_MS)

    @app.before_request
    def _start_timer():
        g.request_start = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]

    @app.after_request
    def _log_request(response):
        start = getattr(g, "request_start", None)
        if start is None:
            return response

        duration_ms = (time.perf_counter() - start) * 1000
        sync = _sync_context()
        response.headers["X-Request-ID"] = g.request_id
        response.headers["X-Request-Duration-Ms"] = f"{duration_ms:.1f}"
        if sync:
            response.headers["X-Sync-Mode"] = sync["sync_mode"]
            if sync["pending"]:
                response.headers["X-Sync-Pending"] = str(sync["pending"])

        if request.path in _SKIP_LOG:
            return response

        extra = {
            "method": request.method,
            "path": request.path,
            "status": response.status_code,
            "duration_ms": round(duration_ms, 1),
            "remote_addr": request.remote_addr,
            "request_id": g.request_id,
            "sync_mode": sync.get("sync_mode"),
            "client_id": sync.get("client_id"),
        }
        line = "%s %s %d (%.0fms)"
        args = (request.method, request.path, response.status_code, duration_ms)
        if response.status_code >= 500:
            logger.error("Server error: " + line, *args, extra=extra)
        elif duration_ms > slow_ms:
            logger.warning("Slow request: " + line, *args, extra=extra)
        elif sync.get("pending"):
            logger.info("Request with %d pending sync writes: " + line, sync["pending"], *args, extra=extra)
        else:
            logger.debug("Request: " + line, *args, extra=extra)
        return response
