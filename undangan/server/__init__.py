"""REST API server for undangan.

Serves comments, guests, settings and stats from a Store using FastAPI.
"""

from .app import create_app

__all__ = ["create_app"]
