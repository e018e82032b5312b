"""
Database migration for the shipping bridge

- carrier_settings: persisted Stallion config with encrypted API keys
- webhook_failures: retry queue for webhooks that could not be applied
- orders: shipment JSON plus the shipment_id / shipment_tracking_id mirrors

Idempotent - safe to run multiple times.
"""
import asyncio
import logging
from sqlalchemy import text

logger = logging.getLogger(__name__)


async def migrate_shipping_tables(engine):
    """Create shipping tables and order columns if they don't exist."""
    logger.info("Starting shipping tables migration...")

    async with engine.begin() as conn:
        # ==================== carrier_settings table ====================
        await conn.execute(text("""
            CREATE TABLE IF NOT EXISTS carrier_settings (
                id SERIAL PRIMARY KEY,
                provider VARCHAR(50) NOT NULL UNIQUE DEFAULT 'stallion',
                is_active BOOLEAN NOT NULL DEFAULT TRUE,
                sandbox_base_url VARCHAR(255),
                production_base_url VARCHAR(255),
                sandbox_api_key_encrypted TEXT,
                production_api_key_encrypted TEXT,
                updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
            )
        """))

        # ==================== webhook_failures table ====================
        await conn.execute(text("""
            CREATE TABLE IF NOT EXISTS webhook_failures (
                id SERIAL PRIMARY KEY,
                event VARCHAR(100) NOT NULL,
                payload JSON,
                error_type VARCHAR(100),
                error_message TEXT,
                status VARCHAR(20) NOT NULL DEFAULT 'pending',
                retry_count INTEGER DEFAULT 0,
                created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
                last_retry_at TIMESTAMP WITH TIME ZONE,
                resolved_at TIMESTAMP WITH TIME ZONE
            )
        """))
        await conn.execute(text(
            "CREATE INDEX IF NOT EXISTS ix_webhook_failures_status ON webhook_failures (status)"
        ))

        # ==================== orders shipment columns ====================
        for column, ddl in (
            ("shipment", "JSON"),
            ("shipment_id", "VARCHAR(100)"),
            ("shipment_tracking_id", "VARCHAR(100)"),
        ):
            await conn.execute(text(f"ALTER TABLE orders ADD COLUMN IF NOT EXISTS {column} {ddl}"))

        await conn.execute(text(
            "CREATE INDEX IF NOT EXISTS ix_orders_shipment_id ON orders (shipment_id)"
        ))
        await conn.execute(text(
            "CREATE INDEX IF NOT EXISTS ix_orders_shipment_tracking_id ON orders (shipment_tracking_id)"
        ))

    logger.info("Shipping tables migration complete!")


async def run_migration():
    """Run the migration using the app's database engine."""
    from shipping_bridge.core.database import engine

    await migrate_shipping_tables(engine)


if __name__ == "__main__":
    from dotenv import load_dotenv

    load_dotenv()
    logging.basicConfig(level=logging.INFO)
    asyncio.run(run_migration())
