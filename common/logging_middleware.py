"""Request audit logging for the study map gateway."""
from __future__ import annotations

import logging
from pathlib import Path
from time import perf_counter
from typing import Optional

from fastapi import FastAPI, Request

from .config import get_settings


def build_audit_logger(service_name: str, log_dir: Optional[Path] = None) -> logging.Logger:
    logger = logging.getLogger(f"audit.{service_name}")
    if logger.handlers:
        return logger

    directory = Path(log_dir or get_settings().log_dir)
    directory.mkdir(parents=True, exist_ok=True)
    logger.setLevel(logging.INFO)
    handler = logging.FileHandler(directory / f"{service_name}.log")
    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    return logger


def add_audit_middleware(app: FastAPI, service_name: str) -> None:
    logger = build_audit_logger(service_name)

    @app.middleware("http")
    async def audit_logger(request: Request, call_next):  # type: ignore[override]
        start = perf_counter()
        client_ip = request.client.host if request.client else "unknown"
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("%s %s | client=%s | unhandled error", request.method, request.url.path, client_ip)
            raise
        duration_ms = (perf_counter() - start) * 1000
        logger.info(
            "%s %s | params=%d | status=%s | client=%s | duration=%.2fms",
            request.method,
            request.url.path,
            len(request.query_params),
            response.status_code,
            client_ip,
            duration_ms,
        )
        return response
