"""confnorm API package.

This module provides a FastAPI service layer around the upload store and the
conversion pipeline.
"""

from .server import create_app  # noqa: F401
