"""Transactional key-value stores."""

from natrix.store.base import BufferedTransaction, Store, Transaction
from natrix.store.config import StoreConfig
from natrix.store.dialect import Dialect, PostgresDialect, SQLiteDialect
from natrix.store.memory import InMemoryStore
from natrix.store.sql import SQLStore

__all__ = [
    "BufferedTransaction",
    "Dialect",
    "InMemoryStore",
    "PostgresDialect",
    "SQLStore",
    "SQLiteDialect",
    "Store",
    "StoreConfig",
    "Transaction",
]
