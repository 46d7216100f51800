"""SQLModel engine singleton."""
from sqlalchemy import event
from sqlmodel import SQLModel, create_engine

from dashboard.config import get_settings

_engine = None


def build_engine(database_url: str, **kwargs):
    """Create an engine whose transactions support SAVEPOINT on SQLite.

    pysqlite defers BEGIN until the first DML statement and manages it on its
    own, which breaks nested transactions. The driver is put in autocommit
    mode and SQLAlchemy emits BEGIN itself.
    """
    if database_url.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        engine = create_engine(database_url, connect_args=connect_args, **kwargs)

        @event.listens_for(engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _emit_begin(conn):
            conn.exec_driver_sql("BEGIN")

        return engine
    return create_engine(database_url, **kwargs)


def create_tables(engine) -> None:
    """Import every table model so metadata is populated, then create_all."""
    from dashboard.models.entities import (  # noqa
        AbsenceLine, Contract, Employee, Hour, Invoice, Project,
    )
    from dashboard.models.sync import SyncStatus  # noqa
    from dashboard.models.cache import CacheRecord  # noqa
    SQLModel.metadata.create_all(engine)


def get_engine():
    """Return the module-level engine, creating it on first call."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = build_engine(settings.database_url)
        create_tables(_engine)
        from dashboard.db.migrations import run_migrations
        run_migrations(_engine)
    return _engine
