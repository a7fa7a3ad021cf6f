"""
Docs Validation Orchestrator - Core Package
===========================================

Configuration, persistence, models and schemas.
"""

from docval.core.config import settings
from docval.core.database import Base, get_db_session

__all__ = ["Base", "get_db_session", "settings"]
