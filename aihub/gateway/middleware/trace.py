"""
Request Tracing & Timing Middleware.

This module provides request ID generation and per-phase latency
instrumentation for the AI Gateway.

Features:
- Unique request ID generation and propagation (X-Request-ID)
- Named phase timings per request (session, preChecks, providerTtfb, ...)
- Server-Timing response header with every phase completed before the
  headers were flushed, plus the running total
- One structured `request-timing` log line per request
"""

import contextvars
import secrets
import time
from typing import Any, Callable, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)

# Context variable for request tracking
request_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("request_id", default=None)

REQUEST_ID_HEADER = "X-Request-ID"
SERVER_TIMING_HEADER = "Server-Timing"


def generate_request_id() -> str:
    """
    Generate a unique request ID.

    Format: req_<timestamp_hex>_<random>
    Example: req_18d5b3f2_a7b9c4d2e1f0
    """
    timestamp = int(time.time() * 1000)
    random_part = secrets.token_hex(6)
    return f"req_{timestamp:x}_{random_part}"


def add_request_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """structlog processor tagging every log line emitted inside a request."""
    request_id = request_id_var.get()
    if request_id is not None:
        event_dict.setdefault("request_id", request_id)
    return event_dict


class RequestTimings:
    """
    Phase stopwatch for one request.

    Phases are kept in the order they were started. A phase that was
    started but never ended is left out of get_all().
    """

    def __init__(self, clock: Callable[[], float] = time.perf_counter):
        self._clock = clock
        self._request_start = clock()
        self._starts: Dict[str, float] = {}
        self._durations: Dict[str, float] = {}

    def start(self, phase: str) -> None:
        self._starts[phase] = self._clock()
        self._durations.pop(phase, None)

    def end(self, phase: str) -> float:
        """Close a phase and return its duration in milliseconds."""
        started = self._starts.get(phase)
        if started is None:
            logger.warning("Timing phase was never started", phase=phase)
            return 0.0
        duration = round((self._clock() - started) * 1000, 2)
        self._durations[phase] = duration
        return duration

    def record(self, phase: str, duration_ms: float) -> None:
        """Store a duration measured elsewhere."""
        self._starts.setdefault(phase, self._clock())
        self._durations[phase] = round(duration_ms, 2)

    def has(self, phase: str) -> bool:
        return phase in self._durations

    def get_all(self) -> Dict[str, float]:
        return {phase: self._durations[phase] for phase in self._starts if phase in self._durations}

    def elapsed(self) -> float:
        """Milliseconds since the request arrived."""
        return round((self._clock() - self._request_start) * 1000, 2)

    def server_timing_header(self) -> str:
        parts = [f"{phase};dur={duration}" for phase, duration in self.get_all().items()]
        parts.append(f"total;dur={self.elapsed()}")
        return ", ".join(parts)


def get_timings(scope_or_state: Any) -> Optional[RequestTimings]:
    """RequestTimings attached by RequestTimingMiddleware, if any."""
    state = getattr(scope_or_state, "state", None)
    if state is not None:
        return getattr(state, "timings", None)
    if isinstance(scope_or_state, dict):
        return scope_or_state.get("state", {}).get("timings")
    return None


class RequestTimingMiddleware:
    """
    ASGI middleware attaching RequestTimings to every HTTP request.

    Handles:
    - Request ID generation or propagation
    - `ttfb` phase: request arrival to first body byte
    - Server-Timing header injected when the response starts
    - `request-timing` log line when the response completes
    """

    def __init__(self, app, log_requests: bool = True):
        self.app = app
        self.log_requests = log_requests

    async def __call__(self, scope, receive, send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        timings = RequestTimings()
        timings.start("ttfb")

        headers = {k.decode("latin-1").lower(): v.decode("latin-1") for k, v in scope.get("headers", [])}
        request_id = headers.get(REQUEST_ID_HEADER.lower()) or generate_request_id()

        state = scope.setdefault("state", {})
        state["timings"] = timings
        state["request_id"] = request_id
        token = request_id_var.set(request_id)

        status_code = 500
        first_byte = False

        async def send_with_timing(message) -> None:
            nonlocal status_code, first_byte
            if message["type"] == "http.response.start":
                status_code = message["status"]
                response_headers = list(message.get("headers", []))
                names = {k.lower() for k, _ in response_headers}
                if REQUEST_ID_HEADER.lower().encode() not in names:
                    response_headers.append((REQUEST_ID_HEADER.encode(), request_id.encode()))
                response_headers.append(
                    (SERVER_TIMING_HEADER.encode(), timings.server_timing_header().encode())
                )
                message = {**message, "headers": response_headers}

            elif message["type"] == "http.response.body":
                if not first_byte:
                    first_byte = True
                    timings.end("ttfb")
                if not message.get("more_body", False) and self.log_requests:
                    logger.info(
                        "request-timing",
                        method=scope.get("method"),
                        path=scope.get("path"),
                        status=status_code,
                        model=state.get("model"),
                        request_id=request_id,
                        total=timings.elapsed(),
                        phases=timings.get_all(),
                    )

            await send(message)

        try:
            await self.app(scope, receive, send_with_timing)
        finally:
            request_id_var.reset(token)
