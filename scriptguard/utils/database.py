"""
Database utilities with transactional session management.
"""
from contextlib import contextmanager
from typing import Generator

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
import structlog

logger = structlog.get_logger()

# Initialize SQLAlchemy
db = SQLAlchemy()


class PersistenceError(Exception):
    """A compliance record could not be written; always propagated."""

    def __init__(self, message: str, record_type: str):
        self.record_type = record_type
        super().__init__(message)


class DatabaseManager:
    """Database manager with transaction handling and health checks."""

    def __init__(self, db_instance: SQLAlchemy):
        self.db = db_instance

    @contextmanager
    def get_session(self) -> Generator:
        """
        Get database session with automatic transaction management.
        Commits on success, rolls back and re-raises on failure.
        """
        session = self.db.session
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error("Database transaction failed", error=str(e))
            raise

    def health_check(self) -> bool:
        """Check database connectivity."""
        try:
            self.db.session.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error("Database health check failed", error=str(e))
            return False


# Global database manager instance
db_manager = DatabaseManager(db)


def save_record(record, record_type: str):
    """
    Insert or update a single record and commit.

    Raises:
        PersistenceError: when the write fails; the session is rolled back.
    """
    try:
        with db_manager.get_session() as session:
            session.add(record)
        return record
    except SQLAlchemyError as e:
        logger.error("Failed to persist record", record_type=record_type, error=str(e))
        raise PersistenceError(f"Could not persist {record_type}: {e}", record_type) from e


def init_db() -> None:
    """Create all tables for the registered models."""
    try:
        db.create_all()
        logger.info("Database initialized successfully")
    except SQLAlchemyError as e:
        logger.error("Database initialization failed", error=str(e))
        raise
