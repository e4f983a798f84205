# trust_monitor/logging_setup.py
import json
import logging
from datetime import datetime, timezone

from flask import has_request_context, request

# Liveness probes hit these every few seconds; they only add noise.
QUIET_PATHS = ("/healthz", "/api/monitor/health")

# Libraries that log every RPC/HTTP call at INFO
NOISY_LOGGERS = ("web3", "urllib3", "celery.beat")


class QuietLivenessFilter(logging.Filter):
    def filter(self, record):
        return not (has_request_context() and request.path in QUIET_PATHS)


def _origin(record) -> dict:
    """Request fields inside a request; the thread name for monitor/probe workers."""
    if has_request_context():
        return {
            "method": request.method,
            "path": request.path,
            "remote_addr": request.headers.get("X-Forwarded-For", request.remote_addr),
            "request_id": request.headers.get("X-Request-ID"),
        }
    if record.threadName and record.threadName != "MainThread":
        return {"thread": record.threadName}
    return {}


class JsonRequestFormatter(logging.Formatter):
    def format(self, record):
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            **_origin(record),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logging(app=None, level=logging.INFO):
    handler = logging.StreamHandler()
    handler.setFormatter(JsonRequestFormatter())
    handler.addFilter(QuietLivenessFilter())

    root = logging.getLogger()
    root.handlers[:] = [handler]  # one handler even when create_app runs more than once
    root.setLevel(level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if app is not None:
        app.logger.handlers[:] = [handler]
        app.logger.setLevel(level)
    return handler
