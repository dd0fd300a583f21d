"""Database package for order payments."""
from .connection import close_db, create_engine_from_settings, create_session_factory, init_db
from .models import Base, Order, ProcessedEvent, User

__all__ = [
    "Base",
    "Order",
    "ProcessedEvent",
    "User",
    "close_db",
    "create_engine_from_settings",
    "create_session_factory",
    "init_db",
]
