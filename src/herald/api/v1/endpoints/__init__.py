"""API endpoint modules for version 1."""

from .identities import router as identities_router
from .system import router as system_router

__all__ = [
    "identities_router",
    "system_router",
]
