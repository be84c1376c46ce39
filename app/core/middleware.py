"""
Middleware for request logging and error handling
"""
import time
import logging
import json
from typing import Any, Callable
from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.exceptions import ClinicException

logger = logging.getLogger(__name__)


def error_body(request: Request, exc: ClinicException) -> dict:
    return {
        "error": exc.message,
        "status_code": exc.status_code,
        "path": request.url.path,
        "retryable": exc.retryable,
    }


class LoggingMiddleware(BaseHTTPMiddleware):
    """Log every request and response, with credentials masked"""

    SENSITIVE_HEADERS = ['authorization', 'cookie', 'x-api-key', 'api-key', 'apikey']
    SENSITIVE_FIELDS = ['password', 'confirm_password', 'token', 'access_token', 'url']
    MAX_BODY_LENGTH = 10000  # Maximum characters to log from request body

    def mask_sensitive_headers(self, headers: dict) -> dict:
        """Mask sensitive header values"""
        masked = {}
        for key, value in headers.items():
            if key.lower() in self.SENSITIVE_HEADERS:
                masked[key] = "***MASKED***"
            else:
                masked[key] = value
        return masked

    def mask_sensitive_fields(self, body: Any) -> Any:
        """Mask passwords and link tokens in a decoded JSON body"""
        if isinstance(body, dict):
            return {
                key: "***MASKED***" if key.lower() in self.SENSITIVE_FIELDS else self.mask_sensitive_fields(value)
                for key, value in body.items()
            }
        if isinstance(body, list):
            return [self.mask_sensitive_fields(item) for item in body]
        return body

    def describe_body(self, body_bytes: bytes) -> str:
        if not body_bytes:
            return "Empty body"
        try:
            body_str = body_bytes.decode('utf-8')
        except UnicodeDecodeError:
            return f"<Binary data, size: {len(body_bytes)} bytes>"

        try:
            json_body = json.loads(body_str)
        except json.JSONDecodeError:
            # Not JSON, so nothing can be masked field by field
            return f"<Non-JSON body, {len(body_str)} chars>"

        pretty = json.dumps(self.mask_sensitive_fields(json_body), indent=2)
        if len(pretty) > self.MAX_BODY_LENGTH:
            return f"{pretty[:self.MAX_BODY_LENGTH]}... [truncated, total: {len(pretty)} chars]"
        return pretty

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()

        logger.info("=" * 80)
        logger.info(f"🔵 REQUEST START: {request.method} {request.url.path}")
        logger.info("=" * 80)
        logger.info(f"💻 Client: {request.client.host if request.client else 'Unknown'}")

        # Query strings may carry link tokens
        if request.query_params:
            logger.info(f"🔍 Query Params: {self.mask_sensitive_fields(dict(request.query_params))}")

        headers = self.mask_sensitive_headers(dict(request.headers))
        logger.debug(f"📋 Headers: {json.dumps(headers, indent=2)}")

        if request.method in ["POST", "PUT", "PATCH"]:
            # Starlette replays the cached body to the endpoint
            body_bytes = await request.body()
            logger.info(f"📦 Request Body:\n{self.describe_body(body_bytes)}")

        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.time() - start_time
            logger.error("─" * 80)
            logger.error(f"❌ REQUEST FAILED: {request.method} {request.url.path}")
            logger.error(f"💥 Error: {str(e)}")
            logger.error(f"⏱️  Duration: {duration:.3f}s")
            logger.error("=" * 80)
            raise

        duration = time.time() - start_time
        logger.info("─" * 80)
        logger.info(f"✅ Status Code: {response.status_code}")
        logger.info(f"⏱️  Duration: {duration:.3f}s")
        logger.info(f"🟢 REQUEST END: {request.method} {request.url.path}")
        logger.info("=" * 80)

        response.headers["X-Process-Time"] = str(duration)
        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Middleware to handle exceptions globally"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)

        except ClinicException as e:
            return JSONResponse(status_code=e.status_code, content=error_body(request, e))

        except Exception as e:
            logger.exception(f"Unexpected error: {str(e)}")
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "error": "Internal server error",
                    "status_code": 500,
                    "path": request.url.path,
                    "retryable": False,
                }
            )
