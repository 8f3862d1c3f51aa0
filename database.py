from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from config import get_settings


def build_engine(database_url: str) -> Engine:
    """Engine for the ledger store; SQLite files get WAL and enforced foreign keys."""
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, pool_pre_ping=True)

    ledger_engine = create_engine(
        database_url, connect_args={"check_same_thread": False}
    )
    event.listen(ledger_engine, "connect", _sqlite_on_connect)
    return ledger_engine


def _sqlite_on_connect(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL;")
        # cascades and SET NULL on categories depend on this
        cursor.execute("PRAGMA foreign_keys=ON;")
    finally:
        cursor.close()


engine = build_engine(get_settings().database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


def init_db(bind: Engine = engine) -> None:
    # models must be imported so their tables are registered on Base.metadata
    import models  # noqa: F401

    Base.metadata.create_all(bind)
