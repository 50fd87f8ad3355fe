"""
Gateway Routers Package.

Usage:
    from aihub.gateway.routers import v2_router

    app.include_router(v2_router)
"""

from aihub.gateway.routers.v2 import router as v2_router

__all__ = [
    "v2_router",
]
