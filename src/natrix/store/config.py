"""Configuration dataclass for stores."""

from dataclasses import dataclass


@dataclass
class StoreConfig:
    """Configuration shared by store implementations."""

    operation_timeout: float = 5.0
    """Seconds a single get/put/scan/commit may take before StorageError."""

    table_name: str = "natrix_kv"
    """Table holding keys and values (SQL stores only)."""

    auto_create_tables: bool = True
    """Automatically create the table if it doesn't exist (SQL stores only)."""
