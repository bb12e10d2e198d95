"""Database models and storage layer."""

from .database import Base, get_db, create_tables, drop_tables, init_database, reset_database_engine
from .models import WorkflowRunModel, ExecutionRecordModel

__all__ = [
    "Base",
    "get_db",
    "create_tables",
    "drop_tables",
    "init_database",
    "reset_database_engine",
    "WorkflowRunModel",
    "ExecutionRecordModel",
]
