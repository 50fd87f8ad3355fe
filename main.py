#!/usr/bin/env python
"""
AIHub - Gateway Entry Point

Usage:
    # Development mode (with hot reload):
    python main.py

    # Or use uvicorn directly:
    uvicorn aihub.main:app --host 0.0.0.0 --port 8090 --reload

Environment Variables:
    - APP_DEBUG=true: Enable debug mode and hot reload
    - APP_ENV=development: Development environment
    - DB_URL / DB_HOST ...: Database location
    - BILLING_CREDIT_BASED_BILLING_ENABLED=true: Enforce the credit gate
"""

from pathlib import Path

import uvicorn

from aihub.core.config import settings

root_dir = Path(__file__).parent.resolve()


def main() -> None:
    """Run the gateway, with hot reload in debug mode."""

    # Show startup info
    print("=" * 60)
    print("Starting AIHub Gateway")
    print("=" * 60)
    print(f"   Environment: {settings.app.env}")
    print(f"   Debug Mode: {settings.app.debug}")
    print(f"   Hot Reload: {settings.app.debug and settings.dev_auto_reload}")
    print(f"   Host: {settings.app.host}:{settings.app.port}")
    print(f"   Workers: {1 if settings.app.debug else settings.app.workers}")
    print("=" * 60)
    print()

    uvicorn.run(
        "aihub.main:app",
        host=settings.app.host,
        port=settings.app.port,
        reload=settings.app.debug and settings.dev_auto_reload,
        workers=1 if settings.app.debug else settings.app.workers,
        log_level=settings.log.level.lower(),
        access_log=settings.log.requests,
        reload_dirs=[str(root_dir / "aihub")] if settings.app.debug else None,
        reload_delay=0.5,
    )


if __name__ == "__main__":
    main()
