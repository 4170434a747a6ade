"""
Create Database Tables Using SQLAlchemy

Creates the procurement store tables directly with create_all(). Useful for
local development and SQLite setups; production databases use Alembic.
"""
import sys
from pathlib import Path

# Add parent directory to Python path
sys.path.insert(0, str(Path(__file__).parent.parent))

import sqlalchemy as sa

from src.bidfinder.db.session import create_all_tables, get_engine
from src.bidfinder.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)


def main():
    """Create all tables and report what exists afterwards."""
    setup_logging()
    engine = get_engine()

    logger.info("creating_tables", dialect=engine.dialect.name)
    create_all_tables(engine)

    inspector = sa.inspect(engine)
    tables = sorted(inspector.get_table_names())
    for table in tables:
        indexes = [ix["name"] for ix in inspector.get_indexes(table)]
        logger.info("table_ready", table=table, indexes=indexes)

    logger.info("database_setup_complete", tables=len(tables))


if __name__ == "__main__":
    main()
