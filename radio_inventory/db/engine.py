from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from db.base import Base

# Connection option for read-only sessions; SQLite opens them with a deferred BEGIN.
READ_ONLY_OPTIONS = {"sqlite_deferred_begin": True}


def build_engine(db_url: str, busy_timeout_ms: int = 25000) -> Engine:
    if not db_url.startswith("sqlite"):
        return create_engine(db_url, pool_pre_ping=True, future=True)

    engine = create_engine(
        db_url,
        connect_args={"timeout": max(busy_timeout_ms, 0) / 1000, "check_same_thread": False},
        future=True,
    )

    # pysqlite defers BEGIN until the first write, so two writers can each hold
    # a read lock and deadlock on upgrade. Writers take the write lock up front;
    # read-only sessions stay deferred so they do not queue behind writers.
    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        if conn.get_execution_options().get("sqlite_deferred_begin"):
            conn.exec_driver_sql("BEGIN")
        else:
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


def init_schema(engine: Engine) -> None:
    import models.inventory_models  # noqa: F401

    Base.metadata.create_all(engine)


def drop_schema(engine: Engine) -> None:
    import models.inventory_models  # noqa: F401

    Base.metadata.drop_all(engine)
