"""
Request/response logging middleware with per-request timing.

Request bodies are never logged: payment requests carry card tokens and
webhook bodies are provider payloads.
"""
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from core.logging_config import get_logger
from core.timing import Stopwatch


logger = get_logger(__name__)


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Log request start, completion (level by status code) and failures.
    """

    SKIP_PATHS = {"/health", "/docs", "/redoc", "/openapi.json"}

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.SKIP_PATHS:
            return await call_next(request)

        request_info = self._get_request_info(request)
        logger.info("request_started", **request_info)

        sw = Stopwatch()
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "request_failed",
                duration_ms=sw.elapsed_ms,
                error=str(exc),
                error_type=type(exc).__name__,
                **request_info,
                exc_info=True,
            )
            raise

        duration_ms = sw.elapsed_ms
        self._log_response(response, duration_ms, request_info)
        response.headers["X-Process-Time"] = f"{duration_ms / 1000:.3f}"
        return response

    @staticmethod
    def _get_request_info(request: Request) -> dict:
        info = {
            "method": request.method,
            "path": request.url.path,
            "query_params": dict(request.query_params),
        }
        user_agent = request.headers.get("User-Agent")
        if user_agent:
            info["user_agent"] = user_agent
        return info

    @staticmethod
    def _log_response(response: Response, duration_ms: float, request_info: dict):
        log_data = {
            "status_code": response.status_code,
            "duration_ms": duration_ms,
            **request_info,
        }
        if response.status_code < 400:
            logger.info("request_completed", **log_data)
        elif response.status_code < 500:
            logger.warning("request_client_error", **log_data)
        else:
            logger.error("request_server_error", **log_data)
