"""
State database connection management for Dataplane.

Holds checkpoints, checkpoint claims and pipeline executions.
"""
import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from dataplane.config.settings import settings

logger = logging.getLogger(__name__)


# SQLAlchemy 2.0 base class for models
class Base(DeclarativeBase):
    pass


class DatabaseManager:
    """State database connection and session management"""

    def __init__(self, database_url: Optional[str] = None, echo: Optional[bool] = None):
        self.database_url = database_url or settings.app.state_database_url
        self.echo = settings.app.state_database_echo if echo is None else echo
        self._engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None

    def initialize(self) -> None:
        """Initialize database connection, session factory and tables"""
        try:
            if self.database_url.startswith('sqlite'):
                options = {"connect_args": {"check_same_thread": False}}
                if self.database_url in ("sqlite://", "sqlite:///:memory:"):
                    options["poolclass"] = StaticPool
                self._engine = create_engine(self.database_url, echo=self.echo, **options)
            else:
                self._engine = create_engine(
                    self.database_url,
                    poolclass=QueuePool,
                    pool_size=settings.connectors.pool_size,
                    max_overflow=settings.connectors.max_overflow,
                    pool_pre_ping=True,
                    echo=self.echo,
                )

            self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)

            # Import models so their tables are registered on Base.metadata
            from dataplane.database import models  # noqa: F401
            Base.metadata.create_all(self._engine)

            logger.info("State database initialized successfully")

        except Exception as e:
            logger.error(f"Failed to initialize state database: {e}")
            raise

    def get_engine(self) -> Engine:
        """Get the database engine"""
        if self._engine is None:
            self.initialize()
        return self._engine

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
            logger.error(f"State database session error: {e}")
            raise
        finally:
            session.close()

    def close(self) -> None:
        """Close database connections"""
        if self._engine:
            self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("State database connections closed")
