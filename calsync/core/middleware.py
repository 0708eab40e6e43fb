import logging
import time
import uuid

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from calsync.core.logging import request_context

logger = logging.getLogger(__name__)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Assigns a request ID, exposes it to every log record emitted while the
    request is handled, and logs one line per request.
    """

    def __init__(self, app: ASGIApp, header_name: str = "X-Request-ID"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get(self.header_name) or str(uuid.uuid4())
        request.state.request_id = request_id

        token = request_context.set(
            {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
            }
        )
        start_time = time.time()
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                f"Unhandled exception during {request.method} {request.url.path}: {exc}",
                exc_info=True,
            )
            raise
        finally:
            request_context.reset(token)

        response.headers[self.header_name] = request_id
        process_time_ms = round((time.time() - start_time) * 1000, 2)
        message = (
            f"{request.method} {request.url.path} -> {response.status_code} "
            f"in {process_time_ms}ms (request_id={request_id})"
        )
        if response.status_code >= 500:
            logger.error(message)
        elif response.status_code >= 400:
            logger.warning(message)
        else:
            logger.info(message)
        return response


def register_middlewares(app: FastAPI) -> None:
    """
    Register all middlewares with the FastAPI app.

    Args:
        app: The FastAPI application instance
    """
    app.add_middleware(RequestContextMiddleware, header_name="X-Request-ID")
