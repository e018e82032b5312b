"""
Store Stallion Express credentials in the carrier_settings table.

Keys are encrypted with SECRET_KEY before they are written, so run this
with the same environment (or .env) as the API. The running service picks
the change up once its config cache expires, or immediately after
GET /api/shipping/debug?refresh=true outside production.

    python scripts/set_carrier_settings.py --sandbox-key sk_sandbox_...
    python scripts/set_carrier_settings.py --prod-key sk_live_... --prod-url https://ship.stallionexpress.ca/api/v4
    python scripts/set_carrier_settings.py --inactive
"""
import argparse
import asyncio
import sys

from dotenv import load_dotenv

load_dotenv()


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create or update the Stallion carrier settings row")
    parser.add_argument("--sandbox-key", help="Sandbox API key (empty string clears it)")
    parser.add_argument("--prod-key", help="Production API key (empty string clears it)")
    parser.add_argument("--sandbox-url", help="Override the sandbox base URL")
    parser.add_argument("--prod-url", help="Override the production base URL")
    parser.add_argument(
        "--inactive",
        action="store_true",
        help="Keep the row but fall back to the STALLION_* environment settings",
    )
    return parser.parse_args(argv)


async def set_carrier_settings(args: argparse.Namespace) -> None:
    from shipping_bridge.core.database import dispose_engine, get_db_session
    from shipping_bridge.services.carrier_config import save_carrier_settings
    from shipping_bridge.services.encryption import decrypt_secret, mask_secret

    try:
        async with get_db_session() as db:
            record = await save_carrier_settings(
                db,
                sandbox_api_key=args.sandbox_key,
                production_api_key=args.prod_key,
                sandbox_base_url=args.sandbox_url,
                production_base_url=args.prod_url,
                is_active=not args.inactive,
            )
            print(f"\n=== Stallion carrier settings ({'active' if record.is_active else 'inactive'}) ===")
            print(f"Sandbox URL:     {record.sandbox_base_url or '(default)'}")
            print(f"Sandbox key:     {mask_secret(decrypt_secret(record.sandbox_api_key_encrypted or '')) or '(none)'}")
            print(f"Production URL:  {record.production_base_url or '(default)'}")
            print(f"Production key:  {mask_secret(decrypt_secret(record.production_api_key_encrypted or '')) or '(none)'}")
    finally:
        await dispose_engine()


if __name__ == "__main__":
    try:
        asyncio.run(set_carrier_settings(parse_args()))
    except Exception as exc:
        print(f"Failed to save carrier settings: {exc}", file=sys.stderr)
        sys.exit(1)
