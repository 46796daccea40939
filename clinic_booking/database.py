# clinic_booking/database.py
from __future__ import annotations
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, declarative_base
from .config import settings

DATABASE_URL: str | None = settings.DATABASE_URL
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL is not configured (check your .env).")

if DATABASE_URL.startswith("sqlite"):
    # Local SQLite (file or memory)
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},  # required by SQLite across threads
        pool_pre_ping=True,
        future=True,
    )

    @event.listens_for(engine, "connect")
    def _sqlite_foreign_keys(dbapi_connection, connection_record):
        # ON DELETE SET NULL on appointments.slot_id needs this
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

else:
    # Postgres and friends. Row locks (SELECT ... FOR UPDATE) are honoured here.
    engine = create_engine(
        DATABASE_URL,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
        pool_pre_ping=True,
        future=True,
    )

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine,
    future=True,
)

Base = declarative_base()


def init_db():
    """
    Creates the tables if they do not exist. Models are imported first so
    SQLAlchemy knows every table.
    """
    from . import models  # noqa: F401
    Base.metadata.create_all(bind=engine)


def get_db():
    """Per-request session; the services own commit/rollback."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
