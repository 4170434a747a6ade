"""
Database Session Management

Lazily built engine, session factory and transactional session scope.
"""
import time
from contextlib import contextmanager
from functools import lru_cache, wraps
from typing import Generator, Optional

from sqlalchemy import create_engine, event, exc
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from config.settings import settings
from src.bidfinder.utils.logger import get_logger

logger = get_logger(__name__)


def _sql_casefold(value):
    return value.casefold() if isinstance(value, str) else value


def install_sqlite_functions(engine: Engine) -> None:
    """
    Register Python string functions on every new SQLite connection.

    SQLite's own lower() only folds ASCII; ``casefold`` lets keyword filters
    match accented Portuguese text the same way the finalizer does.
    """
    if engine.dialect.name != "sqlite":
        return

    @event.listens_for(engine, "connect")
    def register_functions(dbapi_conn, connection_record):
        dbapi_conn.create_function("casefold", 1, _sql_casefold, deterministic=True)


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    """
    Create the application engine on first use.

    Pool sizing only applies to server databases; SQLite keeps its default pool.
    """
    kwargs = {
        "pool_pre_ping": True,  # Verify connections before using
        "echo": settings.database_echo,
    }
    if not settings.database_url.startswith("sqlite"):
        kwargs.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_timeout=settings.database_pool_timeout,
            pool_recycle=settings.database_pool_recycle,
        )

    engine = create_engine(settings.database_url, **kwargs)

    @event.listens_for(engine, "connect")
    def receive_connect(dbapi_conn, connection_record):
        logger.debug("database_connection_established")

    install_sqlite_functions(engine)

    logger.info("database_engine_created", dialect=engine.dialect.name)
    return engine


@lru_cache(maxsize=1)
def get_session_factory() -> sessionmaker:
    """Session factory bound to the application engine."""
    return sessionmaker(bind=get_engine(), autoflush=False, expire_on_commit=False)


@contextmanager
def get_db_session(session_factory: Optional[sessionmaker] = None) -> Generator[Session, None, None]:
    """
    Get database session with automatic cleanup.

    Usage:
        with get_db_session() as session:
            rows = repository.find_matching(session, query)

    Args:
        session_factory: Factory to use instead of the application one

    Yields:
        Database session, committed on success and rolled back on error
    """
    factory = session_factory or get_session_factory()
    session = factory()
    try:
        yield session
        session.commit()
    except exc.SQLAlchemyError as e:
        session.rollback()
        logger.error(
            "database_session_rollback",
            error=str(e),
            error_type=type(e).__name__
        )
        raise
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Optional[Engine] = None):
    """
    Create all tables defined in models.

    Use Alembic migrations in production; this is for tests and local setup.
    """
    from src.bidfinder.db.base import Base, import_all_models

    import_all_models()
    Base.metadata.create_all(bind=engine or get_engine())
    logger.info("database_tables_created")


def close_connections():
    """Dispose of the application engine if it was ever created."""
    if get_engine.cache_info().currsize:
        get_engine().dispose()
        logger.info("database_connections_closed")


def with_retry(max_retries: int = 3, retry_delay: float = 0.5):
    """
    Decorator to retry database operations on transient failures.

    Args:
        max_retries: Maximum number of attempts
        retry_delay: Base delay between attempts in seconds (linear growth)
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            last_exception = None

            for attempt in range(max_retries):
                try:
                    return func(*args, **kwargs)
                except (exc.OperationalError, exc.DisconnectionError) as e:
                    last_exception = e
                    if attempt < max_retries - 1:
                        logger.warning(
                            "database_operation_retry",
                            attempt=attempt + 1,
                            max_retries=max_retries,
                            error=str(e)
                        )
                        time.sleep(retry_delay * (attempt + 1))
                    else:
                        logger.error(
                            "database_operation_failed_after_retries",
                            max_retries=max_retries,
                            error=str(e)
                        )

            raise last_exception

        return wrapper
    return decorator
