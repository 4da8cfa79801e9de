"""
Storage Package.

Durable session checkpoints and lap history.

Modules:
- documents: Checkpoint <-> plain dict conversion
- json_store: One verified JSON file per session
- engine: SQLAlchemy engine and transaction scope
- models/: ORM models
- sql_store: SQL session store and lap history repository
"""

from storage.json_store import JsonSessionStore
from storage.sql_store import LapHistoryRepository, SqlSessionStore

__all__ = [
    "JsonSessionStore",
    "SqlSessionStore",
    "LapHistoryRepository",
]
