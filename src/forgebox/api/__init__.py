"""HTTP API for Forgebox.

Use create_app() to build the application; forgebox.main exposes a module-level
``app`` for uvicorn.
"""

from .app import create_app

__all__ = ["create_app"]
