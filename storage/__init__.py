"""Storage package providing persistence for monitored blockchains, contracts and alerts."""

from .sqlite_repository import SQLiteRepository

__all__ = ["SQLiteRepository"]
