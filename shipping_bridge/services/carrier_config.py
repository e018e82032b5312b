"""
Carrier Config Provider

Resolves the Stallion Express base URL and API key.

Two tiers:
1. The persisted carrier_settings row, when present and active
2. Static STALLION_* settings from the environment

The resolved CarrierConfig is cached in memory for
STALLION_CONFIG_CACHE_TTL_SECONDS. Within the TTL the cached value is
returned even if the settings row changed; call invalidate() (or hit
/api/shipping/debug?refresh=true) after editing it with
scripts/set_carrier_settings.py.
Concurrent cache misses may each read the settings row; that is acceptable.
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shipping_bridge.core.config import Settings, settings as default_settings
from shipping_bridge.core.database import get_db_session
from shipping_bridge.models.carrier_settings import CarrierSettings
from shipping_bridge.services.encryption import decrypt_secret, encrypt_secret, mask_secret

logger = logging.getLogger(__name__)

PROVIDER_CODE = "stallion"

RecordLoader = Callable[[], Awaitable[Optional[Any]]]


@dataclass(frozen=True)
class CarrierConfig:
    """Resolved carrier connection settings. Replaced wholesale on refresh."""
    enabled: bool
    base_url: str
    api_key: str
    sandbox: bool
    source: str  # "settings" or "static"

    @property
    def is_configured(self) -> bool:
        return self.enabled and bool(self.api_key)


async def load_carrier_settings() -> Optional[CarrierSettings]:
    """Read the persisted Stallion settings row, if any."""
    async with get_db_session() as db:
        result = await db.execute(
            select(CarrierSettings).where(CarrierSettings.provider == PROVIDER_CODE)
        )
        return result.scalar_one_or_none()


async def save_carrier_settings(
    db: AsyncSession,
    sandbox_api_key: Optional[str] = None,
    production_api_key: Optional[str] = None,
    sandbox_base_url: Optional[str] = None,
    production_base_url: Optional[str] = None,
    is_active: bool = True,
) -> CarrierSettings:
    """
    Create or update the Stallion settings row.

    API keys are stored Fernet-encrypted. Arguments left as None keep the
    current value; an empty string clears it.
    """
    result = await db.execute(
        select(CarrierSettings).where(CarrierSettings.provider == PROVIDER_CODE)
    )
    record = result.scalar_one_or_none()
    if record is None:
        record = CarrierSettings(provider=PROVIDER_CODE)
        db.add(record)

    record.is_active = is_active
    if sandbox_api_key is not None:
        record.sandbox_api_key_encrypted = encrypt_secret(sandbox_api_key) or None
    if production_api_key is not None:
        record.production_api_key_encrypted = encrypt_secret(production_api_key) or None
    if sandbox_base_url is not None:
        record.sandbox_base_url = sandbox_base_url or None
    if production_base_url is not None:
        record.production_base_url = production_base_url or None

    await db.flush()
    logger.info(
        f"[CarrierConfig] Saved carrier settings: active={is_active} "
        f"sandbox_key={mask_secret(sandbox_api_key) or 'unchanged'} "
        f"production_key={mask_secret(production_api_key) or 'unchanged'}"
    )
    return record


class CarrierConfigProvider:
    """
    TTL-cached resolver for CarrierConfig.

    One instance is built in the application lifespan and shared by the
    carrier client. Tests build their own with a stub record_loader and clock.
    """

    def __init__(
        self,
        config: Settings = default_settings,
        ttl_seconds: Optional[float] = None,
        record_loader: Optional[RecordLoader] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = config
        self.ttl_seconds = (
            ttl_seconds if ttl_seconds is not None else config.STALLION_CONFIG_CACHE_TTL_SECONDS
        )
        self._load_record = record_loader or load_carrier_settings
        self._clock = clock
        self._cached: Optional[CarrierConfig] = None
        self._fetched_at: float = 0.0

    async def get_config(self) -> CarrierConfig:
        """Return the cached config, refreshing it once the TTL has elapsed."""
        now = self._clock()
        if self._cached is not None and (now - self._fetched_at) < self.ttl_seconds:
            return self._cached

        config = await self._resolve()
        self._cached = config
        self._fetched_at = now

        logger.info(
            f"[CarrierConfig] Resolved from {config.source}: "
            f"sandbox={config.sandbox} base_url={config.base_url} "
            f"api_key={mask_secret(config.api_key) or '(none)'}"
        )
        return config

    def invalidate(self) -> None:
        """Drop the cached config so the next call re-reads settings."""
        self._cached = None
        self._fetched_at = 0.0

    async def describe(self) -> Dict[str, Any]:
        """Masked view of the active config for the debug endpoint."""
        config = await self.get_config()
        return {
            "enabled": config.enabled,
            "source": config.source,
            "sandbox": config.sandbox,
            "base_url": config.base_url,
            "api_key": mask_secret(config.api_key),
            "api_key_present": bool(config.api_key),
            "cache_ttl_seconds": self.ttl_seconds,
        }

    async def _resolve(self) -> CarrierConfig:
        try:
            record = await self._load_record()
            if record is not None and record.is_active:
                return self._from_record(record)
        except Exception as e:
            # Settings outage must not break shipping; fall back to static config
            logger.warning(f"[CarrierConfig] Could not read carrier settings, using static config: {e}")

        return self._from_static()

    def _from_record(self, record: Any) -> CarrierConfig:
        sandbox = self.settings.is_sandbox
        if sandbox:
            base_url = record.sandbox_base_url or self.settings.STALLION_BASE_URL_SANDBOX
            api_key = decrypt_secret(record.sandbox_api_key_encrypted or "")
        else:
            base_url = record.production_base_url or self.settings.STALLION_BASE_URL_PROD
            api_key = decrypt_secret(record.production_api_key_encrypted or "")

        return CarrierConfig(
            enabled=True,
            base_url=base_url,
            api_key=api_key,
            sandbox=sandbox,
            source="settings",
        )

    def _from_static(self) -> CarrierConfig:
        sandbox = self.settings.is_sandbox
        return CarrierConfig(
            enabled=self.settings.STALLION_ENABLED,
            base_url=(
                self.settings.STALLION_BASE_URL_SANDBOX if sandbox else self.settings.STALLION_BASE_URL_PROD
            ),
            api_key=(
                self.settings.STALLION_API_KEY_SANDBOX if sandbox else self.settings.STALLION_API_KEY_PROD
            ),
            sandbox=sandbox,
            source="static",
        )
