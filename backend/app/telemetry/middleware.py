from __future__ import annotations

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from .logging_utils import log_trace
from .trace import DiscoveryTrace, reset_current_trace, set_current_trace

API_PREFIX = "/api/"


class TelemetryMiddleware(BaseHTTPMiddleware):
    """Binds a ``DiscoveryTrace`` to each request and reports it once the response is ready.

    API responses carry the trace as ``X-Discovery-Performance`` JSON plus an
    ``X-Request-Id`` header. Persisting metrics is left to the discovery
    service, which knows the query and result shape.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        trace = DiscoveryTrace(path=request.url.path, method=request.method)
        request.state.trace = trace
        token = set_current_trace(trace)
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            trace.finalize()
            if request.url.path.startswith(API_PREFIX):
                response.headers["X-Discovery-Performance"] = trace.to_header_value()
                response.headers["X-Request-Id"] = str(trace.request_id)
            return response
        finally:
            trace.finalize()
            log_trace(trace, status_code)
            reset_current_trace(token)
