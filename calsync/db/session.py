"""
Database session management utilities.
"""

from typing import Generator

from calsync.db.base import SessionLocal, Base, engine


def get_db() -> Generator:
    """
    Get a database session.

    Yields:
        SQLAlchemy database session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    """Create all tables known to the declarative base."""
    # Import models so they register on Base.metadata
    import calsync.models  # noqa: F401

    Base.metadata.create_all(bind=engine)
