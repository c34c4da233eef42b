import structlog

import transactions
from auth import sign_up
from config import configure_logging, load_settings
from database import Profile, init_db, make_engine, make_session_factory

logger = structlog.get_logger(__name__)

DEMO_USERNAME = "demo"
DEMO_PASSWORD = "demo123"

DEMO_TRANSACTIONS = [
    ("income", 2500.00, "Consulting", "2024-04-03", "Invoice #1042"),
    ("expense", 120.50, "Software", "2024-04-10", "Accounting subscription"),
    ("expense", 50.00, "food", "2024-05-01", "Team lunch"),
    ("income", 1800.00, "Consulting", "2024-05-15", "Invoice #1043"),
    ("expense", 340.00, "Travel", "2024-05-20", "Client visit"),
]


def seed_demo(session_factory):
    db = session_factory()
    try:
        if db.query(Profile).filter(Profile.username == DEMO_USERNAME).first():
            logger.info("seed_skipped", reason="demo profile exists")
            return

        profile = sign_up(db, DEMO_USERNAME, DEMO_PASSWORD, first_name="Demo", business_name="Demo Studio")
        for kind, amount, category, date, description in DEMO_TRANSACTIONS:
            add = transactions.add_income if kind == "income" else transactions.add_expense
            add(db, profile.id, amount, category, date, description)
        logger.info("seed_complete", user_id=profile.id, transactions=len(DEMO_TRANSACTIONS))
    finally:
        db.close()


if __name__ == "__main__":
    settings = load_settings()
    configure_logging(settings.log_level)
    engine = make_engine(settings.database_url)
    init_db(engine)
    seed_demo(make_session_factory(engine))
