"""FastAPI routes and error mapping."""

from outreach.api.errors import register_error_handlers
from outreach.api.routes import router

__all__ = ["register_error_handlers", "router"]
