import structlog

from config import configure_logging, load_settings
from database import init_db, make_engine

logger = structlog.get_logger(__name__)


def migrate_db(database_url: str):
    logger.info("migration_started")
    # create_all only adds missing tables; existing ones are left untouched
    init_db(make_engine(database_url))
    logger.info("migration_complete")


if __name__ == "__main__":
    settings = load_settings()
    configure_logging(settings.log_level)
    migrate_db(settings.database_url)
