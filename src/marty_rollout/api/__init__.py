"""HTTP command API."""

from .app import create_app
from .routes import get_orchestrator, router

__all__ = ["create_app", "get_orchestrator", "router"]
