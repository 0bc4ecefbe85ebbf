from . import models  # re-export module for convenience
from .db import (
    PURPOSES,
    fastapi_session,
    get_engine,
    get_sessionmaker,
    init_databases,
    session_scope,
)
from .settings import get_settings, reset_settings_cache

__all__ = [
    "models",
    "PURPOSES",
    "get_settings",
    "reset_settings_cache",
    "get_engine",
    "get_sessionmaker",
    "session_scope",
    "fastapi_session",
    "init_databases",
]
