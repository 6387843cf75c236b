"""Version 1 API endpoints."""

from .endpoints import identities_router, system_router

__all__ = [
    "identities_router",
    "system_router",
]
