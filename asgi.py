"""
asgi.py -- Application assembly for SessionGate.

Run with:  uvicorn asgi:app --reload

api/main.py owns the app, the middleware stack and the routers; this module
only exposes it under a stable import path for ASGI servers.
"""

from api.main import app

__all__ = ["app"]
