"""Per-service HTTP audit log and request correlation ids.

Every request gets a correlation id (taken from ``X-Correlation-ID`` when the
caller sends one). It is stored on ``request.state`` for the error envelope,
echoed in the response header and written to ``<audit_log_dir>/<service>.log``.
"""
from __future__ import annotations

import logging
import uuid
from logging.handlers import RotatingFileHandler
from pathlib import Path
from time import perf_counter

from fastapi import FastAPI, Request

from .config import get_settings

CORRELATION_HEADER = "X-Correlation-ID"
AUDIT_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"


def audit_log_path(service_name: str) -> Path:
    configured = Path(get_settings().audit_log_dir)
    if not configured.is_absolute():
        configured = Path(__file__).resolve().parent.parent / configured
    configured.mkdir(parents=True, exist_ok=True)
    return configured / f"{service_name}.log"


def get_audit_logger(service_name: str) -> logging.Logger:
    audit = logging.getLogger(f"audit.{service_name}")
    if audit.handlers:
        return audit
    audit.setLevel(logging.INFO)
    handler = RotatingFileHandler(audit_log_path(service_name), maxBytes=5 * 1024 * 1024, backupCount=3)
    handler.setFormatter(logging.Formatter(AUDIT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    audit.addHandler(handler)
    return audit


def add_audit_middleware(app: FastAPI, service_name: str) -> None:
    audit = get_audit_logger(service_name)

    @app.middleware("http")
    async def audit_requests(request: Request, call_next):  # type: ignore[override]
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        client = request.client.host if request.client else "unknown"
        started = perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            audit.error(
                "%s %s | status=unhandled | client=%s | correlation_id=%s",
                request.method,
                request.url.path,
                client,
                correlation_id,
            )
            raise
        elapsed_ms = (perf_counter() - started) * 1000
        response.headers.setdefault(CORRELATION_HEADER, correlation_id)
        audit.log(
            logging.WARNING if response.status_code >= 500 else logging.INFO,
            "%s %s | status=%s | client=%s | duration=%.2fms | correlation_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            client,
            elapsed_ms,
            correlation_id,
        )
        return response
