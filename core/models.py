"""SQLAlchemy tables for the durable deployment history."""
from contextlib import contextmanager

from loguru import logger
from sqlalchemy import JSON, Column, DateTime, String, Text, create_engine, func, text
from sqlalchemy.orm import DeclarativeBase, sessionmaker


class Base(DeclarativeBase):
    pass


class DeploymentRecord(Base):
    """One deployment attempt, including its full log trail."""

    __tablename__ = "deployments"

    id = Column(String(64), primary_key=True)
    app_id = Column(String(64), nullable=False, index=True)
    status = Column(String(20), nullable=False)
    error = Column(Text, nullable=True)
    commit_hash = Column(String(64), nullable=True)
    logs = Column(JSON, nullable=False, default=list)

    # ISO-8601 strings, as exposed by the API
    started_at = Column(String(32), nullable=False, index=True)
    finished_at = Column(String(32), nullable=True)

    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<DeploymentRecord {self.id} {self.app_id} ({self.status})>"


class DatabaseManager:
    """Engine and session factory for the history database."""

    def __init__(
        self,
        database_url: str,
        pool_size: int = 5,
        max_overflow: int = 10,
        pool_timeout: int = 30,
        pool_recycle: int = 3600,
        echo: bool = False,
    ):
        if database_url.startswith("sqlite:"):
            # SQLite: no pool tuning, shared across threads
            self.engine = create_engine(
                database_url,
                echo=echo,
                connect_args={"check_same_thread": False},
            )
        else:
            self.engine = create_engine(
                database_url,
                echo=echo,
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_timeout=pool_timeout,
                pool_recycle=pool_recycle,
                pool_pre_ping=True,
            )

        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=self.engine,
            expire_on_commit=False,
        )

    def create_tables(self):
        Base.metadata.create_all(bind=self.engine)

    def drop_tables(self):
        Base.metadata.drop_all(bind=self.engine)

    @contextmanager
    def session_scope(self):
        """Session that commits on success and rolls back on error.

        Usage:
            with db.session_scope() as session:
                session.merge(record)
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self):
        self.engine.dispose()

    def health_check(self) -> bool:
        try:
            with self.session_scope() as session:
                session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False
