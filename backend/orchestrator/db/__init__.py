"""Database helpers for the orchestrator service."""
from __future__ import annotations

from . import models as _models
from .base import Base, create_engine, create_session, dispose_engine, get_session_factory
from .models import *  # noqa: F401,F403
from .session import SessionScope, get_session

__all__ = [
    "Base",
    "SessionScope",
    "create_engine",
    "create_session",
    "dispose_engine",
    "get_session",
    "get_session_factory",
] + _models.__all__
