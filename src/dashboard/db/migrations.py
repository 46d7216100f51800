"""
Database migrations for the dashboard store.

Uses SQLite ALTER TABLE ADD COLUMN for incremental schema evolution.
Each migration is idempotent: columns are only added if absent.

Called automatically from get_engine() after create_all() so both
fresh installs and existing DBs are handled without manual steps.
"""
from typing import Iterable, Tuple

from sqlalchemy import text

# (table, column, SQLite type). Append an entry whenever a released table
# gains a column; create_all() never alters existing tables.
MIGRATIONS: Tuple[Tuple[str, str, str], ...] = ()


def run_migrations(engine, migrations: Iterable[Tuple[str, str, str]] = MIGRATIONS) -> None:
    """Apply all pending schema migrations.

    Safe to call multiple times; checks column existence before altering.
    Supports SQLite only (uses PRAGMA table_info).

    Args:
        engine: SQLAlchemy engine (build_engine result).
        migrations: Column additions to apply, in order.
    """
    with engine.connect() as conn:
        for table, column, col_type in migrations:
            _add_column_if_missing(conn, table, column, col_type)
        conn.commit()


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> None:
    """Add a column to a table if it doesn't already exist.

    Args:
        conn: SQLAlchemy connection.
        table: Table name (lowercase, as SQLite stores it).
        column: Column name to add.
        col_type: SQLite type string, e.g. "INTEGER", "REAL", "TEXT".
    """
    result = conn.execute(text(f"PRAGMA table_info({table})"))
    existing_columns = {row[1] for row in result}
    if not existing_columns:
        # Table not created yet; create_all will build it with the column.
        return
    if column not in existing_columns:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
