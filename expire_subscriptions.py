"""
Move subscriptions whose grace period has ended to inactive.
Meant to run from cron, e.g. hourly.
"""
import logging

from tms_billing.database import SessionLocal
from tms_billing.subscriptions import expire_lapsed_subscriptions


def run():
    db = SessionLocal()
    try:
        expired = expire_lapsed_subscriptions(db)
        print(f"✅ Expired {expired} subscription(s)")
    finally:
        db.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run()
