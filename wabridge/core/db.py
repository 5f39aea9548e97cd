from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from config.settings import get_settings

settings = get_settings()

SQLALCHEMY_DATABASE_URL = settings.database_url.strip()

IS_TEST = settings.environment == "testing"

if not SQLALCHEMY_DATABASE_URL:
    if settings.is_production:
        raise RuntimeError("CRITICAL: DATABASE_URL must be set in production.")
    SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:" if IS_TEST else "sqlite:///./wabridge.db"


def make_engine(url: str) -> Engine:
    """PostgreSQL gets a pooled engine; SQLite is allowed for dev and tests."""
    if url.startswith("postgresql"):
        return create_engine(
            url,
            pool_size=20,
            max_overflow=10,
            pool_timeout=30,
            pool_recycle=1800,
            pool_pre_ping=True,
        )
    if url in ("sqlite://", "sqlite:///:memory:"):
        # One shared connection so every thread sees the same in-memory schema.
        return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    return create_engine(url, connect_args={"check_same_thread": False})


engine = make_engine(SQLALCHEMY_DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def run_migrations(bind: Engine | None = None) -> None:
    """Bootstrap the database schema."""
    # Register all tables on Base.metadata before creating them.
    from wabridge.core import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
