"""
Database engine, session factory and a closing session scope.

SQLite for local dev (the default DATABASE_URL), Postgres in production.
Schema is owned by the Alembic migrations; nothing here creates tables.
"""
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from prescreen.config import DATABASE_URL, DB_POOL_SIZE, DB_MAX_OVERFLOW


class Base(DeclarativeBase):
    pass


def normalize_url(url):
    """Managed Postgres hands out postgres:// URLs; SQLAlchemy 2.x only accepts postgresql://."""
    return url.replace('postgres://', 'postgresql://', 1)


def _engine_kwargs(url):
    if url.startswith('sqlite'):
        return {'connect_args': {'check_same_thread': False}}
    return {'pool_pre_ping': True, 'pool_size': DB_POOL_SIZE, 'max_overflow': DB_MAX_OVERFLOW}


url = normalize_url(DATABASE_URL)
engine = create_engine(url, **_engine_kwargs(url))

SessionLocal = sessionmaker(bind=engine)


def get_session():
    """Return a new DB session."""
    return SessionLocal()


@contextmanager
def session_scope():
    """Session that is closed on exit. Repositories commit their own writes."""
    session = get_session()
    try:
        yield session
    finally:
        session.close()
