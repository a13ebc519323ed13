# widgetsmith/middleware.py
import time
import traceback
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from widgetsmith.utils.logger import logger


class LoggingMiddleware(BaseHTTPMiddleware):
    """Access log line per request; unhandled exceptions become a plain 500."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(f"Unhandled exception: {e}\n{traceback.format_exc()}")
            response = JSONResponse(status_code=500, content={"detail": "Internal Server Error"})
        process_time = time.time() - start_time
        logger.info(
            f"Request: {request.method} {request.url.path} - Response: {response.status_code} "
            f"- Process Time: {process_time:.4f}s"
        )
        response.headers["X-Process-Time"] = f"{process_time:.4f}"
        return response
