"""
Database module.
Contains database connection and models for the SQL queue store.
"""

from taskq.db.connection import Database, create_engine_for_url
from taskq.db.models import Base, TaskRecord

__all__ = [
    "Database",
    "create_engine_for_url",
    "Base",
    "TaskRecord",
]
