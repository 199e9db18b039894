from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings


def build_engine(database_url: Optional[str] = None, **engine_kwargs) -> Engine:
    """Create an engine for ``database_url`` (defaults to the configured one).

    SQLite connections get WAL journaling and enforced foreign keys.
    """
    url = database_url or get_settings().database_url
    is_sqlite = url.startswith("sqlite")
    connect_args: dict[str, object] = {"check_same_thread": False} if is_sqlite else {}
    eng = create_engine(url, connect_args=connect_args, **engine_kwargs)
    if is_sqlite:
        event.listen(eng, "connect", _enable_sqlite_pragmas)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def make_sessionmaker(bind: Engine) -> sessionmaker:
    return sessionmaker(bind=bind, autoflush=False, expire_on_commit=False)


engine = build_engine()
SessionLocal = make_sessionmaker(engine)


class Base(DeclarativeBase):
    pass


def create_schema(bind: Optional[Engine] = None) -> None:
    import models  # noqa: F401  registers the mapped tables

    Base.metadata.create_all(bind or engine)


@contextmanager
def session_scope(factory: Optional[sessionmaker] = None) -> Iterator[Session]:
    session: Session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
