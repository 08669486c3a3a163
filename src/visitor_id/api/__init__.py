"""REST API for visitor-id."""

from .app import create_app

__all__ = ["create_app"]
