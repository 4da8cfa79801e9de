"""
Storage Models Package.

============================================================
MODEL ORGANIZATION
============================================================

Base (base.py)
- Base
- Amount
- RowTimestampMixin

Sessions (sessions.py)
- SessionModel
- SessionWorkerModel
- LapRecordModel

============================================================
"""

from storage.models.base import Amount, Base, RowTimestampMixin
from storage.models.sessions import LapRecordModel, SessionModel, SessionWorkerModel

__all__ = [
    "Base",
    "Amount",
    "RowTimestampMixin",
    "SessionModel",
    "SessionWorkerModel",
    "LapRecordModel",
]
