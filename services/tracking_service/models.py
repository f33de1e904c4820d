"""Database models for Tracking Service."""
from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, Float, ForeignKey, Index, Integer, String, Text, Uuid

from supplychain_shared.database import Base, JSONDocument


class ProductStatus(str, Enum):
    """Product lifecycle states."""
    MANUFACTURED = "manufactured"
    QUALITY_CHECK = "quality-check"
    IN_SUPPLY = "in-supply"
    IN_DISTRIBUTION = "in-distribution"
    DELIVERED = "delivered"
    DELAYED = "delayed"


class ShipmentStatus(str, Enum):
    """Shipment status."""
    PENDING = "pending"
    IN_TRANSIT = "in-transit"
    DELIVERED = "delivered"
    DELAYED = "delayed"


class TransactionStatus(str, Enum):
    """Ownership transfer status."""
    PENDING = "pending"
    IN_TRANSIT = "in-transit"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    DELAYED = "delayed"


class Product(Base):
    """Tracked product unit and its lifecycle timeline."""

    __tablename__ = "products"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    tracking_number = Column(String(100), nullable=False, unique=True, index=True)

    name = Column(String(255), nullable=False)
    category = Column(String(100), nullable=True)
    sub_category = Column(String(100), nullable=True)
    description = Column(Text, nullable=True)
    quantity = Column(Integer, nullable=False, default=0)
    price = Column(Float, nullable=False, default=0.0)
    specifications = Column(JSONDocument, nullable=False, default=dict)

    status = Column(String(30), nullable=False, index=True)
    current_location = Column(String(255), nullable=False)
    current_owner = Column(JSONDocument, nullable=False)  # {"id": ..., "name": ...}
    manufacturer = Column(JSONDocument, nullable=False)

    # [{"status", "title", "date", "location", "handler": {"id", "name"}, "description", "metadata"}]
    timeline = Column(JSONDocument, nullable=False, default=list)
    quality_check = Column(JSONDocument, nullable=True)

    version = Column(Integer, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_products_status_created", "status", "created_at"),
        Index("ix_products_category", "category"),
    )


class Shipment(Base):
    """Logistics tracking for a product moving between two parties."""

    __tablename__ = "shipments"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    tracking_number = Column(String(100), nullable=False, unique=True, index=True)
    product_id = Column(Uuid(as_uuid=True), ForeignKey("products.id"), nullable=False, index=True)
    from_user_id = Column(String(64), nullable=False, index=True)
    to_user_id = Column(String(64), nullable=False, index=True)

    status = Column(String(20), default=ShipmentStatus.PENDING.value, nullable=False, index=True)

    expected_delivery_date = Column(DateTime, nullable=False)
    delivered_at = Column(DateTime, nullable=True)

    # [{"reason", "reported_at", "resolved_at", "notes"}]
    delays = Column(JSONDocument, nullable=False, default=list)
    current_location = Column(String(255), nullable=False, default="Origin")
    # [{"location", "timestamp", "status"}]
    location_history = Column(JSONDocument, nullable=False, default=list)
    notes = Column(Text, nullable=True)

    version = Column(Integer, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_shipments_status_created", "status", "created_at"),
    )


class Transaction(Base):
    """Ownership transfer of a product between two parties."""

    __tablename__ = "transactions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    product_id = Column(Uuid(as_uuid=True), ForeignKey("products.id"), nullable=False, index=True)
    from_user_id = Column(String(64), nullable=False, index=True)
    to_user_id = Column(String(64), nullable=False, index=True)
    quantity = Column(Integer, nullable=False, default=1)

    status = Column(String(20), default=TransactionStatus.PENDING.value, nullable=False, index=True)

    # [{"timestamp", "status", "text", "updated_by": {"id", "name"}}]
    notes = Column(JSONDocument, nullable=False, default=list)

    version = Column(Integer, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_transactions_status_created", "status", "created_at"),
    )
