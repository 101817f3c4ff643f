"""
asgi.py -- Application assembly for the tenant portal.

Run with:  uvicorn asgi:app --reload

api/main.py builds the FastAPI app; this module is the stable import path
for ASGI servers and deployment configs.
"""

from api.main import app

__all__ = ["app"]
