"""
Gateway Middleware Package.

This module provides middleware components for the AI Gateway:
- Tracing: Request ID generation and propagation
- Timing: Per-phase latency, Server-Timing header, request-timing log

Usage:
    from aihub.gateway.middleware import RequestTimingMiddleware

    app.add_middleware(RequestTimingMiddleware)
"""

from aihub.gateway.middleware.trace import (
    REQUEST_ID_HEADER,
    SERVER_TIMING_HEADER,
    RequestTimingMiddleware,
    RequestTimings,
    generate_request_id,
    add_request_id,
    get_timings,
)

__all__ = [
    "REQUEST_ID_HEADER",
    "SERVER_TIMING_HEADER",
    "RequestTimingMiddleware",
    "RequestTimings",
    "generate_request_id",
    "add_request_id",
    "get_timings",
]
