"""FastAPI routes for the analytics core."""

from .api import create_events_router

__all__ = ["create_events_router"]
