"""Middleware registration."""

from fastapi import FastAPI

from lexrewards.config import Settings
from lexrewards.middleware.error_handler import setup_error_handlers
from lexrewards.middleware.logging import setup_logging
from lexrewards.middleware.request_id import RequestIdMiddleware


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Configure logging, error handlers and the request-id middleware."""
    setup_logging(settings)
    setup_error_handlers(app)
    app.add_middleware(RequestIdMiddleware)
