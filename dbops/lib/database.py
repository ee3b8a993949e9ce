"""Embedded Store Connection Module

Provides a SQLAlchemy engine bound to exactly one physical SQLite connection,
the declarative Base shared by the system tables, session helpers and a few
catalog queries against ``sqlite_master``.

All callers use the store sequentially: a connection or session is opened,
used and closed before the next one is opened. StaticPool hands every
checkout the same DBAPI connection, so nesting checkouts would share (and
reset) one transaction.
"""

import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Generator, List, Sequence

from sqlalchemy import Connection, Engine, create_engine, text
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from dbops.lib.config import DEFAULT_DATABASE_URL

Base = declarative_base()


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, matching stored timestamps."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def create_store_engine(database_url: str | None = None, echo: bool = False) -> Engine:
    """Create a SQLAlchemy engine over a single SQLite connection.

    Args:
        database_url: SQLite URL (``sqlite://`` for an in-memory store)
        echo: Log every statement through SQLAlchemy (debugging)

    Returns:
        Engine using StaticPool

    Raises:
        ValueError: If the URL does not point at SQLite

    Example:
        engine = create_store_engine('sqlite:///./data/app.db')
    """
    url = make_url(database_url or DEFAULT_DATABASE_URL)
    if url.get_backend_name() != 'sqlite':
        raise ValueError(f'Only SQLite stores are supported, got {url.get_backend_name()!r}')

    # Make sure the directory of a file-backed store exists
    if url.database and url.database != ':memory:':
        Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)

    return create_engine(
        url,
        poolclass=StaticPool,
        connect_args={'check_same_thread': False},
        echo=echo,
    )


def get_session_factory(engine: Engine) -> sessionmaker:
    """Get session factory for ORM operations on the system tables.

    Usage:
        SessionFactory = get_session_factory(engine)
        with session_scope(SessionFactory) as session:
            session.add(record)
    """
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


@contextmanager
def session_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """Provide a transactional session: commit on success, rollback on error."""
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def ping(engine: Engine) -> float:
    """Round-trip a trivial statement.

    Returns:
        Latency in milliseconds

    Raises:
        sqlalchemy.exc.SQLAlchemyError: If the store is unreachable
    """
    start = time.perf_counter()
    with engine.connect() as conn:
        conn.execute(text('SELECT 1')).first()
    return (time.perf_counter() - start) * 1000


def quote_identifier(conn: Connection, name: str) -> str:
    return conn.dialect.identifier_preparer.quote_identifier(name)


def list_user_tables(conn: Connection, exclude: Sequence[str] = ()) -> List[str]:
    """List tables that are not SQLite internals, ordered by name.

    Args:
        conn: Open connection
        exclude: Table names to leave out

    Returns:
        Sorted table names
    """
    rows = conn.execute(
        text(
            "SELECT name FROM sqlite_master WHERE type = 'table' "
            "AND name NOT LIKE 'sqlite_%' ORDER BY name"
        )
    ).all()
    excluded = set(exclude)
    return [row.name for row in rows if row.name not in excluded]


def table_columns(conn: Connection, table: str) -> List[str]:
    rows = conn.execute(text(f'PRAGMA table_info({quote_identifier(conn, table)})')).all()
    return [row.name for row in rows]


def primary_key_columns(conn: Connection, table: str) -> List[str]:
    rows = conn.execute(text(f'PRAGMA table_info({quote_identifier(conn, table)})')).all()
    return [row.name for row in sorted(rows, key=lambda r: r.pk) if row.pk]


def index_definitions(conn: Connection, table: str) -> Dict[str, List[str]]:
    """Map each index on a table to its ordered column list.

    Includes SQLite's automatic indexes for UNIQUE and PRIMARY KEY
    constraints, since they serve lookups like any other index.
    """
    quoted = quote_identifier(conn, table)
    definitions = {}
    for index_row in conn.execute(text(f'PRAGMA index_list({quoted})')).all():
        index_name = index_row.name
        columns = conn.execute(
            text(f'PRAGMA index_info({quote_identifier(conn, index_name)})')
        ).all()
        definitions[index_name] = [c.name for c in sorted(columns, key=lambda c: c.seqno)]
    return definitions


def missing_tables(conn: Connection, required: Sequence[str]) -> List[str]:
    existing = set(list_user_tables(conn))
    return [table for table in required if table not in existing]
