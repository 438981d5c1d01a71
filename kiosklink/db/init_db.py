"""Initialize the local cache database."""
import logging
from pathlib import Path
from sqlalchemy import inspect
from sqlalchemy.engine import Engine

from kiosklink.db.session import engine as default_engine, Base
from kiosklink.db.models import CacheEntry
from kiosklink.core.config import settings

logger = logging.getLogger(__name__)


def init_db(engine: Engine = None) -> None:
    """Create the cache table, recreating the file if it was wiped."""
    engine = engine or default_engine

    if engine is default_engine and settings.cache_database_url.startswith("sqlite"):
        # "sqlite:///./kiosklink_cache.db" -> "./kiosklink_cache.db"
        db_path = settings.cache_database_url.replace("sqlite:///", "")
        if db_path and db_path != ":memory:":
            db_file = Path(db_path).resolve()
            db_file.parent.mkdir(parents=True, exist_ok=True)
            logger.info(f"Cache database file path: {db_file}")

    _ = CacheEntry

    try:
        Base.metadata.create_all(bind=engine)
        tables = inspect(engine).get_table_names()
        if CacheEntry.__tablename__ not in tables:
            logger.warning(f"Cache table was not created, found: {tables}")
        else:
            logger.info("Cache table ready")
    except Exception as e:
        logger.error(f"Failed to create cache table: {e}", exc_info=True)
        raise


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    init_db()
    logger.info("Cache database initialization complete")
