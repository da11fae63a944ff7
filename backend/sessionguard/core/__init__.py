# SessionGuard Core Module
from .clock import Clock, SystemClock
from .config import Settings, get_settings, settings
from .database import Base, check_db_connection, get_db, get_engine, get_session_maker
from .exceptions import FailurePolicy
from .logging import get_logger, setup_logging

__all__ = [
    "settings",
    "get_settings",
    "Settings",
    "setup_logging",
    "get_logger",
    "Base",
    "get_engine",
    "get_session_maker",
    "get_db",
    "check_db_connection",
    "Clock",
    "SystemClock",
    "FailurePolicy",
]
