"""
Create POS integration tables

Tables:
- pos_integrations (one per user and provider, encrypted credentials)
- pos_locations (opt-in per physical location)
- pos_transactions (purchase log with review request status)
- pos_webhook_events (idempotency ledger, unique per provider + event id)

Also adds the SMS quota and review settings columns to users.
"""

# Ensure this script can be run directly from repo root
import sys
from pathlib import Path

CURRENT_DIR = Path(__file__).resolve().parent
ROOT_DIR = CURRENT_DIR.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from sqlalchemy import text

from posreviews.database import engine

USER_COLUMNS = [
    ("review_url", "VARCHAR(500)"),
    ("sms_message_tone", "VARCHAR(20) DEFAULT 'friendly'"),
    ("custom_sms_message", "TEXT"),
    ("sms_usage_count", "INTEGER NOT NULL DEFAULT 0"),
    ("sms_usage_limit", "INTEGER"),
    ("month_reset_date", "TIMESTAMP"),
]


def upgrade():
    with engine.connect() as conn:
        for column, definition in USER_COLUMNS:
            conn.execute(
                text(f"ALTER TABLE users ADD COLUMN IF NOT EXISTS {column} {definition};")
            )

        conn.execute(
            text(
                """
                CREATE TABLE IF NOT EXISTS pos_integrations (
                    id SERIAL PRIMARY KEY,
                    user_id INTEGER NOT NULL REFERENCES users(id),
                    provider VARCHAR(32) NOT NULL,
                    merchant_id VARCHAR(255),
                    shop_domain VARCHAR(255),
                    store_url VARCHAR(255),
                    access_token_encrypted TEXT,
                    refresh_token_encrypted TEXT,
                    token_expires_at TIMESTAMP,
                    webhook_secret_encrypted TEXT,
                    api_key_encrypted TEXT,
                    webhook_url_token VARCHAR(64) UNIQUE,
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    test_mode BOOLEAN NOT NULL DEFAULT TRUE,
                    test_phone_number VARCHAR(20),
                    consent_confirmed BOOLEAN NOT NULL DEFAULT FALSE,
                    connected_at TIMESTAMP DEFAULT NOW(),
                    updated_at TIMESTAMP DEFAULT NOW(),
                    CONSTRAINT pos_integrations_user_provider_unique UNIQUE (user_id, provider)
                );
                """
            )
        )
        conn.execute(
            text(
                "CREATE INDEX IF NOT EXISTS ix_pos_integrations_merchant_id "
                "ON pos_integrations (merchant_id);"
            )
        )
        conn.execute(
            text(
                "CREATE INDEX IF NOT EXISTS ix_pos_integrations_shop_domain "
                "ON pos_integrations (shop_domain);"
            )
        )

        conn.execute(
            text(
                """
                CREATE TABLE IF NOT EXISTS pos_locations (
                    id SERIAL PRIMARY KEY,
                    pos_integration_id INTEGER NOT NULL REFERENCES pos_integrations(id),
                    external_location_id VARCHAR(255) NOT NULL,
                    location_name VARCHAR(255),
                    is_enabled BOOLEAN NOT NULL DEFAULT FALSE,
                    created_at TIMESTAMP DEFAULT NOW(),
                    CONSTRAINT pos_locations_integration_unique
                        UNIQUE (pos_integration_id, external_location_id)
                );
                """
            )
        )

        conn.execute(
            text(
                """
                CREATE TABLE IF NOT EXISTS pos_transactions (
                    id SERIAL PRIMARY KEY,
                    user_id INTEGER NOT NULL REFERENCES users(id),
                    pos_integration_id INTEGER NOT NULL REFERENCES pos_integrations(id),
                    external_transaction_id VARCHAR(255) NOT NULL,
                    customer_name VARCHAR(255),
                    customer_phone VARCHAR(20),
                    phone_confidence VARCHAR(10),
                    purchase_amount NUMERIC(10, 2),
                    location_name VARCHAR(255),
                    sms_status VARCHAR(40) NOT NULL DEFAULT 'pending',
                    skip_reason VARCHAR(500),
                    is_test_mode BOOLEAN NOT NULL DEFAULT FALSE,
                    message_sid VARCHAR(64),
                    sms_sent_at TIMESTAMP,
                    refunded_at TIMESTAMP,
                    created_at TIMESTAMP NOT NULL DEFAULT NOW(),
                    CONSTRAINT pos_transactions_integration_external_unique
                        UNIQUE (pos_integration_id, external_transaction_id)
                );
                """
            )
        )
        conn.execute(
            text(
                "CREATE INDEX IF NOT EXISTS pos_transactions_recent_contact "
                "ON pos_transactions (user_id, customer_phone, created_at);"
            )
        )

        conn.execute(
            text(
                """
                CREATE TABLE IF NOT EXISTS pos_webhook_events (
                    id SERIAL PRIMARY KEY,
                    provider VARCHAR(32) NOT NULL,
                    event_id VARCHAR(255) NOT NULL,
                    event_type VARCHAR(100),
                    processed_at TIMESTAMP NOT NULL DEFAULT NOW(),
                    CONSTRAINT pos_webhook_events_provider_event_unique UNIQUE (provider, event_id)
                );
                """
            )
        )
        conn.commit()
        print("Migration create_pos_integration_tables applied successfully")


def downgrade():
    with engine.connect() as conn:
        conn.execute(text("DROP TABLE IF EXISTS pos_webhook_events"))
        conn.execute(text("DROP TABLE IF EXISTS pos_transactions"))
        conn.execute(text("DROP TABLE IF EXISTS pos_locations"))
        conn.execute(text("DROP TABLE IF EXISTS pos_integrations"))
        for column, _ in reversed(USER_COLUMNS):
            conn.execute(text(f"ALTER TABLE users DROP COLUMN IF EXISTS {column}"))
        conn.commit()
        print("Migration create_pos_integration_tables rolled back")


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Manage POS integration tables migration")
    parser.add_argument("--down", action="store_true", help="Rollback the migration")
    args = parser.parse_args()

    if args.down:
        downgrade()
    else:
        upgrade()
