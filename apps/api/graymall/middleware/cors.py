"""
CORS Middleware Setup
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from graymall.core.config import settings


def setup_cors(app: FastAPI) -> None:
    """Browser clients call the earnings, withdrawal and checkout routes with cookies."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID", "X-API-Key"],
        expose_headers=["X-Request-ID", "X-Response-Time"],
        max_age=settings.CORS_PREFLIGHT_MAX_AGE,
    )
