"""
Shared fixtures: in-memory SQLite store and PNCP payload builders.
"""
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from src.bidfinder.db.base import Base, import_all_models
from src.bidfinder.db.session import install_sqlite_functions
from tests.factories import build_payload, build_raw


@pytest.fixture(scope="function")
def sqlite_engine():
    """Create an in-memory SQLite database shared across threads."""
    import_all_models()
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    install_sqlite_functions(engine)
    Base.metadata.create_all(engine)

    yield engine

    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(sqlite_engine):
    return sessionmaker(bind=sqlite_engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def pncp_payload():
    return build_payload


@pytest.fixture
def raw_record():
    return build_raw
