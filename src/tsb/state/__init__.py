from .sqlite_store import SqliteRecordStore
from .store import RecordStore

__all__ = [
    "RecordStore",
    "SqliteRecordStore",
]
