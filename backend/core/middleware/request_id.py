import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from backend.core.logging import request_id_ctx_var, latency_bucket_ms


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a request_id for the request's logs and echo it on the response."""

    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next):
        rid = request.headers.get(self.header_name) or str(uuid4())
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)
        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(token)

        response.headers[self.header_name] = rid
        logging.getLogger("creatorhub").info(
            "request.complete",
            extra={
                "request_id": rid,
                "path": request.url.path,
                "method": request.method,
                "status": response.status_code,
                "actor_id": request.headers.get("x-user-id"),
                "latency_bucket": latency_bucket_ms((time.perf_counter() - start) * 1000),
            },
        )
        return response
