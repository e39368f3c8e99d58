"""
API route modules.

Each module defines routes for one area.
"""

from routes.security import router as security_router
from routes.sessions import router as sessions_router

__all__ = [
    "security_router",
    "sessions_router",
]
