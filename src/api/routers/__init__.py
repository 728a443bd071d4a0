"""API routers."""

from api.routers import matching

__all__ = ["matching"]
