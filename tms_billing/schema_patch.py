import logging

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine

from tms_billing.database import engine as default_engine

logger = logging.getLogger(__name__)

SUBSCRIPTION_COLUMNS = {
    "payment_gateway": "VARCHAR",
    "is_in_trial": "BOOLEAN DEFAULT FALSE",
    "trial_start": "TIMESTAMP",
    "trial_end": "TIMESTAMP",
    "razorpay_mandate_id": "VARCHAR",
    "mandate_created_at": "TIMESTAMP",
    "paypal_subscription_id": "VARCHAR",
    "autopay_cancelled_at": "TIMESTAMP",
    "autopay_cancellation_reason": "VARCHAR",
    "last_billing_date": "TIMESTAMP",
    "next_billing_date": "TIMESTAMP",
    "locked_amount_inr": "FLOAT",
    "previous_plan_tier": "VARCHAR",
    "previous_subscription_id": "VARCHAR(36)",
    "storage_used_mb": "FLOAT",
}

PAYMENT_TRANSACTION_COLUMNS = {
    "autopay_mandate_id": "VARCHAR",
    "failure_reason": "TEXT",
    "metadata": "JSON",
}


def _get_table_columns(conn: Connection, table_name: str) -> set[str]:
    if conn.dialect.name == "sqlite":
        result = conn.execute(text(f"PRAGMA table_info({table_name})"))
        return {row[1] for row in result}

    result = conn.execute(
        text(
            """
            SELECT column_name
            FROM information_schema.columns
            WHERE table_name = :table_name
            """
        ),
        {"table_name": table_name},
    )
    return {row[0] for row in result}


def _add_missing_columns(conn: Connection, table_name: str, columns: dict[str, str]) -> list[str]:
    existing = _get_table_columns(conn, table_name)
    added = []
    for name, ddl in columns.items():
        if name not in existing:
            column_name = f'"{name}"' if name == "metadata" else name
            conn.execute(text(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {ddl}"))
            added.append(name)
    return added


def ensure_subscription_billing_columns(engine: Engine | None = None) -> list[str]:
    """
    Patch user_subscriptions for deployments created before autopay and plan-change tracking.
    """
    with (engine or default_engine).begin() as conn:
        return _add_missing_columns(conn, "user_subscriptions", SUBSCRIPTION_COLUMNS)


def ensure_payment_transaction_columns(engine: Engine | None = None) -> list[str]:
    with (engine or default_engine).begin() as conn:
        return _add_missing_columns(conn, "payment_transactions", PAYMENT_TRANSACTION_COLUMNS)


def ensure_plan_cache_gateway_column(engine: Engine | None = None) -> list[str]:
    """
    The plan cache originally held Razorpay plans only; PayPal plans share it keyed by gateway.
    """
    with (engine or default_engine).begin() as conn:
        return _add_missing_columns(
            conn,
            "razorpay_plans_cache",
            {"gateway": "VARCHAR NOT NULL DEFAULT 'razorpay'"},
        )


def _deactivate_duplicate_active_rows(conn: Connection) -> int:
    rows = conn.execute(
        text(
            """
            SELECT id, user_id
            FROM user_subscriptions
            WHERE status = 'active'
            ORDER BY user_id, created_at DESC
            """
        )
    ).all()

    seen: set[str] = set()
    stale_ids = []
    for subscription_id, user_id in rows:
        if user_id in seen:
            stale_ids.append(subscription_id)
        else:
            seen.add(user_id)

    for subscription_id in stale_ids:
        conn.execute(
            text("UPDATE user_subscriptions SET status = 'inactive' WHERE id = :id"),
            {"id": subscription_id},
        )
    return len(stale_ids)


def ensure_single_active_subscription_index(engine: Engine | None = None) -> int:
    """
    Create the unique partial index behind the one-active-subscription rule.

    Older data may already hold several active rows per user; all but the
    newest are deactivated first or the index cannot be built. Returns how
    many rows were deactivated.
    """
    with (engine or default_engine).begin() as conn:
        deactivated = _deactivate_duplicate_active_rows(conn)
        if deactivated:
            logger.warning("Deactivated duplicate active subscriptions count=%s", deactivated)
        conn.execute(
            text(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS uq_user_subscriptions_one_active
                ON user_subscriptions (user_id)
                WHERE status = 'active'
                """
            )
        )
    return deactivated


def apply_schema_patches(engine: Engine | None = None) -> None:
    added = ensure_subscription_billing_columns(engine)
    added += ensure_payment_transaction_columns(engine)
    added += ensure_plan_cache_gateway_column(engine)
    ensure_single_active_subscription_index(engine)
    if added:
        logger.info("Schema patch added columns=%s", ",".join(added))
