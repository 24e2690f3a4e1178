"""
API Middleware Package
"""

from .cors import setup_cors
from .logging import RequestLoggingMiddleware, pii_filter_processor, setup_structlog

__all__ = [
    "RequestLoggingMiddleware",
    "pii_filter_processor",
    "setup_cors",
    "setup_structlog",
]
