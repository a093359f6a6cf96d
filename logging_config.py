"""
Structured logging configuration.

JSON lines in production, plain text in development. Every record emitted
while a request is being handled carries that request's id, so a detect
call can be followed through lookup, cache and queue insert. Records from
scheduler jobs carry request_id "-".
"""

from __future__ import annotations

import json
import logging
import time
import uuid

from flask import Flask, g, has_request_context, request

# Probes hit these every few seconds; keep them out of the access log
_QUIET_PATHS = ("/health", "/live", "/ready")

# Optional `extra=` keys copied into JSON output
_CONTEXT_FIELDS = ("request_id", "student_id", "queue_item", "provider")

TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s [%(request_id)s]: %(message)s"


class RequestIdFilter(logging.Filter):
    """Stamp records with the current request id (or "-")."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            rid = getattr(g, "request_id", None) if has_request_context() else None
            record.request_id = rid or "-"
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key in _CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value not in (None, "-"):
                entry[key] = value
        if record.exc_info and record.exc_info[0]:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def build_handler(log_format: str) -> logging.Handler:
    handler = logging.StreamHandler()
    handler.addFilter(RequestIdFilter())
    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt="%H:%M:%S"))
    return handler


def init_logging(app: Flask) -> None:
    """Install the root handler and per-request id / access log hooks."""
    level = str(app.config.get("LOG_LEVEL", "INFO")).upper()

    root = logging.getLogger()
    root.setLevel(getattr(logging, level, logging.INFO))
    root.handlers.clear()
    root.addHandler(build_handler(app.config.get("LOG_FORMAT", "text")))

    for noisy in ("werkzeug", "apscheduler", "httpx", "openai"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    @app.before_request
    def _start_request():
        # Upstream callers may pass their own id to correlate across services
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        g.request_start = time.monotonic()

    @app.after_request
    def _access_log(response):
        response.headers["X-Request-ID"] = g.get("request_id", "-")
        if request.path not in _QUIET_PATHS:
            elapsed = (time.monotonic() - g.get("request_start", time.monotonic())) * 1000
            app.logger.info("%s %s -> %d in %.0fms", request.method, request.path,
                            response.status_code, elapsed)
        return response
