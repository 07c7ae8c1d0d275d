"""FastAPI application and routes."""

from caseflow.api.app import create_app
from caseflow.api.routes import router

__all__ = ["create_app", "router"]
