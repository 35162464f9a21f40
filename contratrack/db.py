"""Declarative base and session factory shared by every model module."""
from sqlalchemy import create_engine
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()


def make_engine(url: str, **kwargs):
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    else:
        kwargs.setdefault("pool_pre_ping", True)
    return create_engine(url, future=True, **kwargs)


def make_session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


def init_db(engine) -> None:
    """Create missing tables. Production schemas are managed by Alembic."""
    # models must be imported so their tables are registered on Base.metadata
    from contratrack.compliance import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def insert_ignore(session, model, conflict_columns, **values) -> None:
    """INSERT a row unless one with the same unique key already exists.

    Uses ``ON CONFLICT DO NOTHING`` where the dialect supports it, so two
    concurrent first inserts never fail each other.
    """
    session.flush()
    dialect = session.get_bind().dialect.name
    insert = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}.get(dialect)
    if insert is None:
        lookup = {c: values[c] for c in conflict_columns}
        if session.query(model).filter_by(**lookup).first() is None:
            session.add(model(**values))
            session.flush()
        return
    session.execute(insert(model).values(**values).on_conflict_do_nothing(index_elements=list(conflict_columns)))
