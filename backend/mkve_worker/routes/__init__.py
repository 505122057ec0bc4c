"""
HTTP and WebSocket routes.
"""

from .worker import health_router, router as worker_router

__all__ = ["health_router", "worker_router"]
