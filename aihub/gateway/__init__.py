"""
AI Gateway Package.

Single HTTP entry point that dispatches chat, embedding, image and video
requests to upstream AI vendors.

Features:
- Vendor inference from model names, with explicit `vendor/model` pinning
- Provider failover and smooth weighted credential rotation
- Credit gate and throttled metering against the payment service
- Streaming proxy with per-phase Server-Timing
- Fire-and-forget ModelCall / Usage / model status recording

Usage:
    from aihub.gateway import GatewayRuntime, v2_router

    app.state.runtime = GatewayRuntime.from_settings()
    app.include_router(v2_router)
"""

from aihub.gateway.dispatch import DispatchOrchestrator, DispatchRequest, DispatchResult, StreamSession
from aihub.gateway.errors import (
    AuthenticationRequired,
    GatewayError,
    InsufficientCreditError,
    InternalGatewayError,
    ModelNotFoundError,
    ProviderUnavailableError,
    RequestValidationFailed,
    UnsupportedModelError,
    VendorError,
)
from aihub.gateway.middleware import RequestTimingMiddleware
from aihub.gateway.routers import v2_router
from aihub.gateway.runtime import GatewayRuntime

__all__ = [
    # Runtime
    "GatewayRuntime",
    "DispatchOrchestrator",
    "DispatchRequest",
    "DispatchResult",
    "StreamSession",
    # Errors
    "GatewayError",
    "RequestValidationFailed",
    "UnsupportedModelError",
    "ModelNotFoundError",
    "InsufficientCreditError",
    "ProviderUnavailableError",
    "AuthenticationRequired",
    "VendorError",
    "InternalGatewayError",
    # HTTP
    "RequestTimingMiddleware",
    "v2_router",
]
