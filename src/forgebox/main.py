"""ASGI entry point: ``uvicorn forgebox.main:app``"""

from .api.app import create_app
from .logging_config import setup_structured_logging

setup_structured_logging()
app = create_app()
