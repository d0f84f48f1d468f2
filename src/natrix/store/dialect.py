"""SQL dialect abstraction for different databases."""

from dataclasses import dataclass
from typing import Literal, Protocol

Driver = Literal["aiosqlite", "asyncpg"]


@dataclass(frozen=True)
class DialectQueries:
    """Pre-generated SQL queries for a key-value table."""

    create_table: str
    begin: str
    select_value: str
    select_version: str
    select_range: str
    upsert: str
    tombstone: str


class Dialect(Protocol):
    """Protocol for SQL dialect differences."""

    driver: Driver

    def queries_for_table(self, table_name: str) -> DialectQueries:
        """Generate all queries for a given table."""
        ...


def _quote(name: str) -> str:
    """Quote an identifier."""
    # Double any existing double quotes and wrap in double quotes
    return '"' + name.replace('"', '""') + '"'


class SQLiteDialect:
    """SQLite dialect using aiosqlite.

    Writers serialize on ``BEGIN IMMEDIATE``; use one connection per store.
    Deleted keys keep a row with a NULL value so their version survives.
    """

    driver: Driver = "aiosqlite"

    def queries_for_table(self, table_name: str) -> DialectQueries:
        """Generate SQLite queries for a key-value table."""
        t = _quote(table_name)
        return DialectQueries(
            create_table=f"""
                CREATE TABLE IF NOT EXISTS {t} (
                    key TEXT PRIMARY KEY,
                    value BLOB,
                    version INTEGER NOT NULL DEFAULT 1,
                    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
                )
            """,
            begin="BEGIN IMMEDIATE",
            select_value=f"SELECT version, value FROM {t} WHERE key = ?",
            select_version=f"SELECT version FROM {t} WHERE key = ?",
            select_range=f"""
                SELECT key, version, value
                FROM {t}
                WHERE key >= ? AND key < ? AND value IS NOT NULL
                ORDER BY key
            """,
            upsert=f"""
                INSERT INTO {t} (key, value, version, updated_at)
                VALUES (?, ?, 1, datetime('now'))
                ON CONFLICT (key) DO UPDATE
                SET value = excluded.value,
                    version = {t}.version + 1,
                    updated_at = excluded.updated_at
            """,
            tombstone=f"""
                UPDATE {t}
                SET value = NULL,
                    version = version + 1,
                    updated_at = datetime('now')
                WHERE key = ?
            """,
        )


class PostgresDialect:
    """PostgreSQL dialect using asyncpg.

    Keys use the "C" collation so range scans follow byte order.
    """

    driver: Driver = "asyncpg"

    def queries_for_table(self, table_name: str) -> DialectQueries:
        """Generate PostgreSQL queries for a key-value table."""
        t = _quote(table_name)
        return DialectQueries(
            create_table=f"""
                CREATE TABLE IF NOT EXISTS {t} (
                    key TEXT COLLATE "C" PRIMARY KEY,
                    value BYTEA,
                    version BIGINT NOT NULL DEFAULT 1,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
            """,
            begin="BEGIN ISOLATION LEVEL READ COMMITTED",
            select_value=f"SELECT version, value FROM {t} WHERE key = $1",
            select_version=f"SELECT version FROM {t} WHERE key = $1 FOR UPDATE",
            select_range=f"""
                SELECT key, version, value
                FROM {t}
                WHERE key >= $1 AND key < $2 AND value IS NOT NULL
                ORDER BY key
            """,
            upsert=f"""
                INSERT INTO {t} (key, value, version, updated_at)
                VALUES ($1, $2, 1, NOW())
                ON CONFLICT (key) DO UPDATE
                SET value = EXCLUDED.value,
                    version = {t}.version + 1,
                    updated_at = NOW()
            """,
            tombstone=f"""
                UPDATE {t}
                SET value = NULL,
                    version = version + 1,
                    updated_at = NOW()
                WHERE key = $1
            """,
        )
