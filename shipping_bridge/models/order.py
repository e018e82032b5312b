"""
Order model

Orders are owned by the storefront. This service only touches the shipment
fields: the embedded shipment record (JSON, camelCase keys) and two indexed
scalar mirrors used for the atomic reservation and for webhook lookups.
"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, Numeric, DateTime, JSON

from shipping_bridge.core.database import Base


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    invoice = Column(String(50), index=True)
    status = Column(String(50), default="Pending")  # Pending, Processing, Shipped, Delivered, Cancelled

    # Customer contact and address: name, address, city, state, zipCode, country, contact, email
    user_info = Column(JSON)
    # Line items: quantity, weight, variant.weight
    cart = Column(JSON)

    # Pricing
    sub_total = Column(Numeric(10, 2), default=0)
    shipping_cost = Column(Numeric(10, 2), default=0)
    total = Column(Numeric(10, 2), default=0)

    # Shipment record; shipment_id doubles as the idempotency marker
    shipment = Column(JSON, nullable=True)
    shipment_id = Column(String(100), nullable=True, index=True)
    shipment_tracking_id = Column(String(100), nullable=True, index=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
