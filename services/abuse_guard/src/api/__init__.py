"""HTTP admin and status API."""

from .endpoints import router
from .error_handlers import register_exception_handlers

__all__ = ["register_exception_handlers", "router"]
