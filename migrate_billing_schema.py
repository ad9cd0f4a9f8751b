"""
Bring an existing billing database up to date.
Adds the autopay, plan-change and gateway columns and builds the
one-active-subscription index. Safe to run repeatedly.
"""
from tms_billing.database import Base, engine
from tms_billing import models  # noqa: F401
from tms_billing.schema_patch import (
    ensure_payment_transaction_columns,
    ensure_plan_cache_gateway_column,
    ensure_single_active_subscription_index,
    ensure_subscription_billing_columns,
)


def migrate():
    Base.metadata.create_all(bind=engine)
    print("✅ Tables created where missing")

    for label, patch in (
        ("user_subscriptions", ensure_subscription_billing_columns),
        ("payment_transactions", ensure_payment_transaction_columns),
        ("razorpay_plans_cache", ensure_plan_cache_gateway_column),
    ):
        added = patch(engine)
        if added:
            print(f"✅ Added to {label}: {', '.join(added)}")
        else:
            print(f"✅ {label} already up to date")

    deactivated = ensure_single_active_subscription_index(engine)
    if deactivated:
        print(f"⚠ Deactivated {deactivated} duplicate active subscription(s)")
    print("✅ Billing migration completed successfully.")


if __name__ == "__main__":
    migrate()
