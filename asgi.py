"""
asgi.py -- ASGI entry point for authgate.

Kept separate from api/main.py so process managers have a stable import path
that does not change if the API package is reorganised.

Run with:  uvicorn asgi:app --reload
           uvicorn asgi:app --host 0.0.0.0 --port 8000 --workers 2
"""

from api.main import app

__all__ = ["app"]
