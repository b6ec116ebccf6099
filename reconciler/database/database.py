from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from contextlib import contextmanager
from typing import Generator, Optional

from config.settings import settings
from .models import Base


def build_engine(database_url: str, echo: bool = False):
    """Create an engine; SQLite connections are shared across threads"""
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
            echo=echo,
        )
    return create_engine(database_url, echo=echo, pool_pre_ping=True)


class DatabaseManager:
    """Database management class for common operations"""

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or settings.database_url
        self.engine = build_engine(self.database_url, echo=settings.debug)
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, bind=self.engine
        )

    def initialize_database(self):
        """Initialize database with tables"""
        Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """Context manager for database sessions"""
        db = self.SessionLocal()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def close_all_sessions(self):
        """Close all database connections"""
        self.engine.dispose()
