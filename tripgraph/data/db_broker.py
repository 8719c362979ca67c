from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base

# Base class for SQLAlchemy models
Base = declarative_base()


class ConnectionBroker:
    """
    Owns the SQLAlchemy engine and session factory for one database.

    Constructed once by the pipeline wiring and handed to whatever needs
    a session, so tests can point independent brokers at throwaway
    databases.
    """

    def __init__(self, url: str = None, engine: Engine = None, echo: bool = False):
        if engine is None:
            if not url:
                raise ValueError("Either a database URL or an engine must be provided.")
            engine = create_engine(
                url,
                pool_pre_ping=True,  # Verify connections before using
                echo=echo  # Set to True for SQL debug logging
            )
        self._engine = engine
        self._SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=engine
        )

    @classmethod
    def from_config(cls, config):
        return cls(url=config.url)

    def get_engine(self) -> Engine:
        return self._engine

    @contextmanager
    def get_session(self):
        """
        Get a SQLAlchemy session with automatic cleanup.

        Usage:
            with broker.get_session() as session:
                session.query(Model).all()
        """
        session = self._SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_tables(self, tables=None):
        """Create all tables defined in models (or just the given ones)."""
        Base.metadata.create_all(bind=self._engine, tables=tables)
