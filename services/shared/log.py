"""
Shared - logging setup and request logging middleware
"""

import logging
import os
import time

from fastapi import FastAPI, Request

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

logger = logging.getLogger("services.access")


def configure_logging(level: str | None = None) -> None:
    level = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(level=level, format=LOG_FORMAT)
    # httpx logs every request at INFO; the dependency caller already does.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def install_request_logging(app: FastAPI, service: str) -> None:
    @app.middleware("http")
    async def log_request(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - started) * 1000
        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        logger.log(
            level,
            "%s %s %s -> %d (%.1fms)",
            service, request.method, request.url.path, response.status_code, duration_ms,
        )
        return response
