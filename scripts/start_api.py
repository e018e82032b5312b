"""
Start the shipping bridge under uvicorn.

PORT and HOST come from the environment (or .env); log level follows
LOG_LEVEL from the app settings.
"""
import os
import sys

import uvicorn
from dotenv import load_dotenv

load_dotenv()


def _read_port() -> int:
    value = os.environ.get("PORT", "8000")
    try:
        return int(value)
    except ValueError as exc:
        raise SystemExit(f"Invalid PORT '{value}': {exc}") from exc


def main() -> None:
    from shipping_bridge.core.config import settings

    uvicorn.run(
        "shipping_bridge.main:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=_read_port(),
        log_level=settings.LOG_LEVEL.lower(),
        proxy_headers=True,
    )


if __name__ == "__main__":
    try:
        main()
    except Exception as exc:
        print(f"Failed to start shipping bridge: {exc}", file=sys.stderr)
        raise
