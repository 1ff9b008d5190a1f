"""
Database connection management for the compliance sync service
"""
import logging
from typing import Iterator, Optional
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session, DeclarativeBase
from sqlalchemy.pool import QueuePool, StaticPool
from contextlib import contextmanager

from compliance_sync.config.settings import settings

logger = logging.getLogger(__name__)

# SQLAlchemy 2.0 base class for models
class Base(DeclarativeBase):
    pass


class DatabaseManager:
    """Database connection and session management"""

    def __init__(self, database_url: Optional[str] = None, echo: Optional[bool] = None):
        self._database_url = database_url
        self._echo = echo
        self._engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None

    @property
    def database_url(self) -> str:
        return self._database_url or settings.database.database_url

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith('sqlite')

    def initialize(self) -> None:
        """Initialize database connection and session factory"""
        echo = settings.app.debug if self._echo is None else self._echo
        try:
            if self.is_sqlite:
                engine_kwargs = {
                    "echo": echo,
                    "connect_args": {"check_same_thread": False},  # Allow SQLite to be used with multiple threads
                }
                if ":memory:" in self.database_url or self.database_url in ("sqlite://", "sqlite+pysqlite://"):
                    # One shared connection so every session sees the same in-memory database
                    engine_kwargs["poolclass"] = StaticPool
                self._engine = create_engine(self.database_url, **engine_kwargs)
            else:
                # PostgreSQL configuration with connection pooling
                self._engine = create_engine(
                    self.database_url,
                    poolclass=QueuePool,
                    pool_size=settings.database.database_pool_size,
                    max_overflow=settings.database.database_max_overflow,
                    pool_timeout=settings.database.database_pool_timeout,
                    pool_pre_ping=True,  # Validate connections before use
                    echo=echo,
                )

            self._session_factory = sessionmaker(
                bind=self._engine,
                expire_on_commit=False
            )

            logger.info("Database connection initialized successfully")

        except Exception as e:
            logger.error(f"Failed to initialize database connection: {e}")
            raise

    def get_engine(self) -> Engine:
        """Get the database engine"""
        if self._engine is None:
            self.initialize()
        return self._engine

    def get_session_factory(self) -> sessionmaker:
        """Get the session factory"""
        if self._session_factory is None:
            self.initialize()
        return self._session_factory

    @contextmanager
    def get_session(self) -> Iterator[Session]:
        """Get a database session with automatic cleanup"""
        if self._session_factory is None:
            self.initialize()

        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Database session error: {e}")
            raise
        finally:
            session.close()

    def create_tables(self) -> None:
        """Create all tables registered on the declarative base"""
        # Importing the models registers them on Base.metadata
        import compliance_sync.sync.models  # noqa: F401

        Base.metadata.create_all(bind=self.get_engine())

    def test_connection(self) -> bool:
        """Test database connection"""
        try:
            with self.get_session() as session:
                result = session.execute(text("SELECT 1"))
                return result.scalar() == 1
        except Exception as e:
            logger.error(f"Database connection test failed: {e}")
            return False

    def close(self) -> None:
        """Close database connections"""
        if self._engine:
            self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Database connections closed")


# Global database manager instance
db_manager = DatabaseManager()
