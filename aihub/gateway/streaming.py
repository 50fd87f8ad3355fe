"""
Streaming Proxy.

Translates a committed StreamSession into the gateway's SSE framing:

    data: {"delta": {"role": "assistant", "content": "..."}}
    ...
    data: {"usage": {"inputTokens": ..., "outputTokens": ..., "totalTokens": ...}}

    event: server-timing
    data: session;dur=0.4, preChecks;dur=1.2, ..., total;dur=812.3

    data: [DONE]

Chunks are forwarded as they arrive. A vendor failure after the first byte
is reported as a `data: {"error": {...}}` frame; the HTTP status is already
committed by then.
"""

import json
from typing import Any, AsyncIterator, Dict

import httpx
import structlog

from aihub.gateway.adapters import AdapterError
from aihub.gateway.dispatch import StreamSession
from aihub.gateway.middleware.trace import RequestTimings

logger = structlog.get_logger(__name__)

DONE_FRAME = "data: [DONE]\n\n"

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def sse_data(data: Dict[str, Any]) -> str:
    return f"data: {json.dumps(data, ensure_ascii=False)}\n\n"


def sse_event(event: str, data: str) -> str:
    return f"event: {event}\ndata: {data}\n\n"


async def chat_event_stream(session: StreamSession, timings: RequestTimings) -> AsyncIterator[str]:
    """
    SSE body for a streaming chat request.

    The ModelCall row is always written exactly once: on completion, on a
    mid-stream failure, or (in the background, with the text
    received so far) when the client disconnects.
    """
    finished = False
    timings.start("streaming")
    try:
        try:
            async for chunk in session:
                if chunk.has_delta:
                    yield sse_data({"delta": chunk.delta()})
        except Exception as e:
            timings.end("streaming")
            finished = True
            error = await session.fail(e)
            log = logger.warning if isinstance(e, (AdapterError, httpx.HTTPError)) else logger.error
            log(
                "Stream interrupted",
                model=session.model,
                request_id=session.request.request_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            yield sse_data(error.to_error_body())
            yield DONE_FRAME
            return

        timings.end("streaming")
        finished = True
        usage = await session.succeed()
        yield sse_data({"usage": usage.to_dict()})
        yield sse_event("server-timing", timings.server_timing_header())
        yield DONE_FRAME

    finally:
        # Only a client disconnect or cancellation leaves the attempt open
        if not finished:
            logger.info(
                "Client disconnected during stream",
                model=session.model,
                request_id=session.request.request_id,
            )
            session.abort()
        await session.aclose()
