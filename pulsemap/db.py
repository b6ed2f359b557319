from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

Base = declarative_base()


def make_engine(url):
    """Create an engine for `url`.

    SQLite connections are shared across the refresh worker threads, and an
    in-memory database has to stay on one connection to survive at all.
    """
    if url.startswith('sqlite'):
        kwargs = {'connect_args': {'check_same_thread': False}}
        if url in ('sqlite://', 'sqlite:///:memory:'):
            kwargs['poolclass'] = StaticPool
        return create_engine(url, future=True, **kwargs)
    return create_engine(url, future=True, pool_pre_ping=True)


def make_sessionmaker(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def init_db(engine):
    """Create the events and admin_users tables if they don't exist."""
    # models must be imported so their tables are registered on Base.metadata
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
