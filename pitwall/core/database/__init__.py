# pitwall/core/database/__init__.py
"""
Database package for Pitwall.

Provides SQLAlchemy models, base classes, and database session management.
"""

from .base import Base, get_db
from .models import AnalysisJob, Report, Upload

__all__ = [
    "Base",
    "get_db",
    "Upload",
    "AnalysisJob",
    "Report",
]
