"""
asgi.py -- ASGI entry point for the church auth service.

api/main.py builds the app; this module only re-exports it so the process
manager has a stable import path.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app  # noqa: F401
