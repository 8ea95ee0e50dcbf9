import logging
from datetime import datetime, timezone

from sqlalchemy import create_engine, event, text, inspect
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from app.config import settings

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _set_sqlite_pragma(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(url: str, **kwargs):
    """Create an engine with the pragmas/pool settings the URL's backend needs."""
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
        new_engine = create_engine(url, **kwargs)
        # Enable WAL mode and foreign keys for SQLite
        event.listen(new_engine, "connect", _set_sqlite_pragma)
        return new_engine
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        **kwargs,
    )


engine = build_engine(settings.DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    pass


def get_db():
    """Dependency that provides a database session per request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _auto_migrate(engine_instance):
    """Add missing columns to existing tables (lightweight SQLite migration)."""
    insp = inspect(engine_instance)

    # Define migrations as (table, column, sql_type_default)
    migrations = [
        ("deals", "satisfaction_sent", "BOOLEAN DEFAULT 0"),
        ("deals", "closed_at", "DATETIME"),
        ("leads", "source_lead_id", "VARCHAR(36)"),
        ("tasks", "logs", "JSON"),
    ]

    with engine_instance.connect() as conn:
        for table, column, col_type in migrations:
            if table in insp.get_table_names():
                existing_cols = [c["name"] for c in insp.get_columns(table)]
                if column not in existing_cols:
                    conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
                    logger.info("Auto-migrate: added column %s.%s (%s)", table, column, col_type)
        conn.commit()


def init_db(engine_instance=None):
    """Create all tables. Called on startup."""
    import app.models  # noqa: F401  (registers every model on Base.metadata)

    target = engine_instance or engine
    logger.info("Creating database tables...")
    Base.metadata.create_all(bind=target)
    _auto_migrate(target)
    logger.info("Database tables ready.")
