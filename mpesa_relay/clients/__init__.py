"""Expose constructed client wrappers."""

from .daraja import AccessTokenError, DarajaClient, DarajaRequestError
from .record_store import SQLiteRecordStore

__all__ = [
    "AccessTokenError",
    "DarajaClient",
    "DarajaRequestError",
    "SQLiteRecordStore",
]
