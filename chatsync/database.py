"""
Local persistent storage engine (SQLite through SQLAlchemy)
"""
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from chatsync.core.config import settings

# Base class for all local models
Base = declarative_base()


def create_local_engine(url: str = None) -> Engine:
    """
    Create the engine for the local key-value store.

    In-memory SQLite URLs share one connection across threads, since
    storage calls run in worker threads.
    """
    url = url or settings.LOCAL_STORE_URL
    if url.startswith("sqlite") and (url.endswith(":memory:") or url == "sqlite://"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, pool_pre_ping=True, connect_args=connect_args)


def create_session_factory(engine: Engine) -> sessionmaker:
    """Session factory bound to ``engine``"""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine):
    """Initialize local tables"""
    # Import models so they register on Base.metadata
    from chatsync.models import local_store  # noqa: F401

    Base.metadata.create_all(bind=engine)
