"""
asgi.py -- ASGI entry point for AuthCore.

Run with:  uvicorn asgi:app --reload

Kept separate from api/main.py so process-level concerns (server choice,
extra routers mounted by a host application) stay out of the API module.
"""

from api.main import app

__all__ = ["app"]
