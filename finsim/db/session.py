# finsim/db/session.py
"""Database engine, session factory and initialization."""

import os
from pathlib import Path

from sqlmodel import SQLModel, Session, create_engine

# Get database URL from environment, default to local SQLite
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./finsim.db")

# Make sure the directory of a file-backed SQLite database exists
if DATABASE_URL.startswith("sqlite:///") and ":memory:" not in DATABASE_URL:
    db_path = DATABASE_URL.replace("sqlite:///", "")
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)


def build_engine(url: str = DATABASE_URL, echo: bool = False):
    """Create an engine; SQLite connections may be shared across threads."""
    return create_engine(
        url,
        connect_args={"check_same_thread": False} if url.startswith("sqlite") else {},
        echo=echo,
    )


engine = build_engine()


def create_db_and_tables(bind=None):
    """Create all tables if they don't exist."""
    # models must be imported for their tables to be registered
    from finsim.db import models  # noqa: F401

    SQLModel.metadata.create_all(bind or engine)


def get_session(bind=None) -> Session:
    """Get a new database session. Loaded rows stay readable after commit."""
    return Session(bind or engine, expire_on_commit=False)


def init_db():
    """Initialize database on startup."""
    create_db_and_tables()
