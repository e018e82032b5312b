"""
Persisted carrier settings

One row per provider. When active, it overrides the static STALLION_* settings.
API keys are Fernet-encrypted (services/encryption.py).
"""
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text

from shipping_bridge.core.database import Base


class CarrierSettings(Base):
    __tablename__ = "carrier_settings"

    id = Column(Integer, primary_key=True)
    provider = Column(String(50), unique=True, nullable=False, default="stallion")
    is_active = Column(Boolean, default=True, nullable=False)

    sandbox_base_url = Column(String(255), nullable=True)
    production_base_url = Column(String(255), nullable=True)

    # Encrypted credentials
    sandbox_api_key_encrypted = Column(Text, nullable=True)
    production_api_key_encrypted = Column(Text, nullable=True)

    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self):
        return f"<CarrierSettings provider={self.provider} active={self.is_active}>"
