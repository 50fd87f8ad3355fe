"""
Gateway Dispatch Router.

Endpoints (mounted at /api/v2):
- POST /chat/completions - Chat completions (streaming supported)
- POST /embeddings - Vector embeddings
- POST /image/generations - Image generation (alias /images/generations)
- POST /video/generations - Video generation
- GET  /status - Whether any provider is usable

Caller identity comes from the X-User-DID header; X-App-DID is optional.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse

from aihub.gateway.adapters import (
    CALL_CHAT,
    CALL_EMBEDDING,
    CALL_IMAGE,
    CALL_VIDEO,
    ChatResult,
    EmbeddingResult,
    ImageResult,
    VideoResult,
)
from aihub.gateway.dispatch import DispatchRequest, DispatchResult
from aihub.gateway.errors import AuthenticationRequired, RequestValidationFailed
from aihub.gateway.middleware.trace import RequestTimings, get_timings
from aihub.gateway.recorder import CallOutcome
from aihub.gateway.routing.registry import find_model
from aihub.gateway.runtime import GatewayRuntime
from aihub.gateway.streaming import STREAM_HEADERS, chat_event_stream


router = APIRouter(prefix="/api/v2", tags=["gateway"])


# =============================================================================
# Dependencies
# =============================================================================

@dataclass
class Caller:
    user_did: str
    app_did: Optional[str]
    request_id: Optional[str]
    timings: RequestTimings


def get_runtime(request: Request) -> GatewayRuntime:
    return request.app.state.runtime


def request_timings(request: Request) -> RequestTimings:
    timings = get_timings(request)
    if timings is None:
        timings = RequestTimings()
        request.state.timings = timings
    return timings


async def get_caller(request: Request, runtime: GatewayRuntime = Depends(get_runtime)) -> Caller:
    """Resolve caller identity (`session` phase)."""
    timings = request_timings(request)
    timings.start("session")

    gateway_settings = runtime.settings.gateway
    user_did = request.headers.get(gateway_settings.user_header)
    if not user_did:
        timings.end("session")
        raise AuthenticationRequired("Unauthorized: missing user identity", code="UNAUTHORIZED")

    caller = Caller(
        user_did=user_did,
        app_did=request.headers.get(gateway_settings.app_header),
        request_id=getattr(request.state, "request_id", None),
        timings=timings,
    )
    timings.end("session")
    return caller


async def read_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise RequestValidationFailed("Invalid JSON body")
    if not isinstance(body, dict):
        raise RequestValidationFailed("Request body must be a JSON object")

    model, _ = find_model(body)
    request.state.model = model
    return body


def build_request(call_type: str, body: Dict[str, Any], caller: Caller) -> DispatchRequest:
    return DispatchRequest(
        call_type=call_type,
        body=body,
        user_did=caller.user_did,
        app_did=caller.app_did,
        request_id=caller.request_id,
        timings=caller.timings,
    )


# =============================================================================
# Response envelopes
# =============================================================================

def render_usage(outcome: CallOutcome) -> Dict[str, Any]:
    usage: Dict[str, Any] = outcome.usage.to_dict() if outcome.usage else {}
    if outcome.image_count:
        usage["imageCount"] = outcome.image_count
    if outcome.duration_seconds:
        usage["durationSeconds"] = outcome.duration_seconds
    if outcome.credits is not None:
        usage["creditUsage"] = outcome.credits
    return usage


def render_result(dispatched: DispatchResult) -> Dict[str, Any]:
    result = dispatched.result
    usage = render_usage(dispatched.outcome)

    if isinstance(result, ChatResult):
        content: Dict[str, Any] = {
            "role": "assistant",
            "content": result.text,
            "text": result.text,
        }
        if result.tool_calls:
            content["toolCalls"] = result.tool_calls
        if result.finish_reason:
            content["finishReason"] = result.finish_reason
        content["usage"] = usage
        return content

    if isinstance(result, EmbeddingResult):
        return {"data": result.data, "model": dispatched.model, "usage": usage}

    if isinstance(result, ImageResult):
        return {"images": result.images, "data": result.images, "model": dispatched.model, "usage": usage}

    if isinstance(result, VideoResult):
        return {"videos": result.videos, "model": dispatched.model, "usage": usage}

    return {"model": dispatched.model, "usage": usage}


def wants_stream(body: Dict[str, Any]) -> bool:
    if body.get("stream") is True:
        return True
    nested = body.get("input")
    return isinstance(nested, dict) and nested.get("stream") is True


async def _dispatch_json(call_type: str, request: Request, caller: Caller, runtime: GatewayRuntime) -> JSONResponse:
    body = await read_body(request)
    dispatched = await runtime.dispatcher.dispatch(build_request(call_type, body, caller))
    return JSONResponse(content=render_result(dispatched))


# =============================================================================
# Endpoints
# =============================================================================

@router.post("/chat/completions")
async def chat_completions(
    request: Request,
    caller: Caller = Depends(get_caller),
    runtime: GatewayRuntime = Depends(get_runtime),
):
    """
    Create a chat completion.

    Returns `{role, content, text, toolCalls?, usage}`, or an SSE stream of
    delta chunks when stream=true.
    """
    body = await read_body(request)
    dispatch_request = build_request(CALL_CHAT, body, caller)

    if wants_stream(body):
        session = await runtime.dispatcher.dispatch_stream(dispatch_request)
        return StreamingResponse(
            chat_event_stream(session, caller.timings),
            media_type="text/event-stream",
            headers=STREAM_HEADERS,
        )

    dispatched = await runtime.dispatcher.dispatch(dispatch_request)
    return JSONResponse(content=render_result(dispatched))


@router.post("/embeddings")
async def embeddings(
    request: Request,
    caller: Caller = Depends(get_caller),
    runtime: GatewayRuntime = Depends(get_runtime),
):
    return await _dispatch_json(CALL_EMBEDDING, request, caller, runtime)


@router.post("/image/generations")
@router.post("/images/generations")
async def image_generations(
    request: Request,
    caller: Caller = Depends(get_caller),
    runtime: GatewayRuntime = Depends(get_runtime),
):
    return await _dispatch_json(CALL_IMAGE, request, caller, runtime)


@router.post("/video/generations")
async def video_generations(
    request: Request,
    caller: Caller = Depends(get_caller),
    runtime: GatewayRuntime = Depends(get_runtime),
):
    return await _dispatch_json(CALL_VIDEO, request, caller, runtime)


@router.get("/status")
async def status(runtime: GatewayRuntime = Depends(get_runtime)):
    """Service availability: at least one enabled provider with an active credential."""
    return {"available": await runtime.is_available()}
