"""
Expiry sweep for subscriptions.
Marks every active or trial subscription whose end date is today or earlier
as expired. Meant to be run once a day from cron.
"""
import logging
import os

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from smartpark.subscriptions import get_expiring_subscriptions, process_expired_subscriptions

load_dotenv()

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./smartpark.db")
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {},
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

EXPIRY_WARNING_DAYS = int(os.getenv("EXPIRY_WARNING_DAYS", "7"))


def run():
    db = SessionLocal()
    try:
        expired_count = process_expired_subscriptions(db)
        print(f"✓ Expired {expired_count} subscription(s).")

        expiring = get_expiring_subscriptions(db, days=EXPIRY_WARNING_DAYS)
        if expiring:
            print(f"⚠ {len(expiring)} subscription(s) end within {EXPIRY_WARNING_DAYS} days:")
            for subscription in expiring:
                print(f"   - {subscription.id} admin={subscription.admin_id} ends {subscription.end_date:%Y-%m-%d}")
    finally:
        db.close()


if __name__ == "__main__":
    run()
