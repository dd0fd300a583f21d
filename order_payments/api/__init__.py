"""FastAPI application and routes."""
from .dependencies import PaymentServices
from .main import create_app

__all__ = ["PaymentServices", "create_app"]
