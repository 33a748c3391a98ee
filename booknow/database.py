import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import settings

logger = logging.getLogger(__name__)

database_url = settings.database_url

# Hosted Postgres providers hand out postgres:// but SQLAlchemy needs postgresql://
if database_url.startswith("postgres://"):
    database_url = database_url.replace("postgres://", "postgresql://", 1)

engine_kwargs = {"pool_pre_ping": True}

# SQLite sessions are shared across the FastAPI threadpool
if database_url.startswith("sqlite"):
    engine_kwargs["connect_args"] = {"check_same_thread": False}
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        # Single in-memory database for the whole process (tests)
        engine_kwargs["poolclass"] = StaticPool

engine = create_engine(database_url, **engine_kwargs)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """Dependency to get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_tables():
    """Create all tables in the database"""
    from . import models  # noqa: F401 - register mappers on Base.metadata

    logger.info(f"Creating tables on {engine.dialect.name}")
    Base.metadata.create_all(bind=engine)


def drop_tables():
    """Drop all tables (tests and local resets only)"""
    from . import models  # noqa: F401

    Base.metadata.drop_all(bind=engine)
