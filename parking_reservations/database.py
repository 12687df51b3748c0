from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import settings


def _is_memory_sqlite(url: str) -> bool:
    return ":memory:" in url or url in ("sqlite://", "sqlite+pysqlite://")


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        options = {"connect_args": {"check_same_thread": False}}
        if _is_memory_sqlite(url):
            # one shared connection so every session sees the same in-memory database
            options["poolclass"] = StaticPool
        return options
    return {"pool_pre_ping": True}


def _take_write_lock_on_begin(engine):
    # SQLite ignores SELECT ... FOR UPDATE; BEGIN IMMEDIATE holds the
    # database write lock for the whole transaction instead.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_engine(url: str, echo: bool = False):
    engine = create_engine(url, echo=echo, **_engine_options(url))
    if url.startswith("sqlite") and not _is_memory_sqlite(url):
        _take_write_lock_on_begin(engine)
    return engine


engine = make_engine(settings.database_url, echo=settings.sql_echo)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
