from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Callable, ContextManager, Generator, Optional

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, Session, create_engine

from .config import settings

# A callable returning a commit/rollback unit of work, e.g. `session_scope`.
SessionFactory = Callable[[], ContextManager[Session]]


def _is_sqlite(database_url: str) -> bool:
    return database_url.startswith("sqlite")


def _is_postgres(database_url: str) -> bool:
    return database_url.startswith("postgresql")


def _ensure_sqlite_dir(database_url: str) -> None:
    """
    Ensure the parent folder exists for SQLite file-based DB URLs like:
      sqlite:///./data/recruitment.sqlite
      sqlite:////absolute/path/to/db.sqlite
    """
    if not database_url.startswith("sqlite:///"):
        return

    path = database_url.replace("sqlite:///", "", 1)
    if not path or path == ":memory:":
        return
    folder = os.path.dirname(path)
    if folder:
        os.makedirs(folder, exist_ok=True)


def _sqlite_pragmas(engine: Engine, busy_timeout_ms: int) -> None:
    """
    WAL lets one writer and many readers share the tablet database;
    busy_timeout makes a second writer wait instead of failing immediately.
    """

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA synchronous=NORMAL;")
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)};")
        cursor.close()


def _postgres_session_settings(engine: Engine, statement_timeout_ms: int) -> None:
    @event.listens_for(engine, "connect")
    def _set_postgres_settings(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute(f"SET statement_timeout = {int(statement_timeout_ms)};")
        cursor.close()


def build_engine(database_url: str, *, busy_timeout_ms: Optional[int] = None) -> Engine:
    """
    Create a SQLAlchemy engine for the given URL.

    - SQLite gets pragmas + check_same_thread=False (worker threads share it)
    - Postgres gets a statement timeout of the same size
    """
    timeout_ms = busy_timeout_ms if busy_timeout_ms is not None else settings.sqlite_busy_timeout_ms

    if _is_sqlite(database_url):
        _ensure_sqlite_dir(database_url)
        connect_args = {"check_same_thread": False, "timeout": timeout_ms / 1000.0}
    else:
        connect_args = {}

    engine = create_engine(
        database_url,
        echo=False,
        connect_args=connect_args,
        pool_pre_ping=True,
    )

    if _is_sqlite(database_url):
        _sqlite_pragmas(engine, timeout_ms)

    if _is_postgres(database_url):
        _postgres_session_settings(engine, timeout_ms)

    return engine


def get_engine() -> Engine:
    return build_engine(settings.resolved_database_url)


# Single, shared engine for the app process
engine: Engine = get_engine()


def register_models() -> None:
    """
    Central place to import ALL models so SQLModel registers them.
    Keep this list current as you add tables.
    """
    from .models.coupon import Coupon  # noqa: F401
    from .models.biometric_record import BiometricRecord  # noqa: F401
    from .models.seed_recruitment import SeedRecruitment  # noqa: F401
    from .models.subject import Subject  # noqa: F401
    from .models.facility_config import FacilityConfig  # noqa: F401


def init_db(create_tables: bool = True, *, bind: Optional[Engine] = None) -> None:
    """
    Register models, then create missing tables.
    Non-destructive: create_all will not drop or alter existing tables.
    """
    register_models()
    if create_tables:
        SQLModel.metadata.create_all(bind or engine)


def make_session_scope(bind: Engine) -> SessionFactory:
    """
    Build a `session_scope`-style factory bound to a specific engine.
    Tests and alternate databases use this; the app uses `session_scope`.
    """

    @contextmanager
    def _scope() -> Generator[Session, None, None]:
        session = Session(bind, expire_on_commit=False)
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return _scope


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """
    Unit of work with commit/rollback safety.

    Usage:
        with session_scope() as db:
            db.add(...)
    """
    session = Session(engine, expire_on_commit=False)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
