"""Routers package."""

from .sync import router as sync_router
from .trend import router as trend_router

__all__ = [
    "sync_router",
    "trend_router",
]
