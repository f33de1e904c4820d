"""Domain event definitions for the supply-chain lifecycle."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Event types emitted by the lifecycle engine."""

    # Product events
    PRODUCT_CREATED = "product.created"
    PRODUCT_STATUS_CHANGED = "product.status_changed"
    PRODUCT_QUALITY_CHECKED = "product.quality_checked"

    # Shipment events
    SHIPMENT_CREATED = "shipment.created"
    SHIPMENT_STATUS_UPDATED = "shipment.status_updated"
    SHIPMENT_DELAY_REPORTED = "shipment.delay_reported"
    SHIPMENT_DELAY_RESOLVED = "shipment.delay_resolved"

    # Transaction events
    TRANSACTION_CREATED = "transaction.created"
    TRANSACTION_STATUS_UPDATED = "transaction.status_updated"


class BaseEvent(BaseModel):
    """Base event model with common fields."""

    event_id: UUID = Field(default_factory=uuid4)
    event_type: EventType
    aggregate_id: UUID  # product, shipment or transaction id
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    version: int = Field(default=1)
    correlation_id: UUID = Field(default_factory=uuid4)
    causation_id: Optional[UUID] = None
    actor_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        json_encoders = {
            datetime: lambda v: v.isoformat(),
            UUID: lambda v: str(v)
        }


# Product Events
class ProductCreatedEvent(BaseEvent):
    """Emitted when a manufacturer registers a product."""
    event_type: EventType = EventType.PRODUCT_CREATED
    tracking_number: str
    category: Optional[str] = None
    status: str


class ProductStatusChangedEvent(BaseEvent):
    """Emitted after a timeline entry is appended."""
    event_type: EventType = EventType.PRODUCT_STATUS_CHANGED
    tracking_number: str
    from_status: str
    to_status: str
    location: str


class ProductQualityCheckedEvent(BaseEvent):
    """Emitted when a quality check outcome is recorded."""
    event_type: EventType = EventType.PRODUCT_QUALITY_CHECKED
    tracking_number: str
    passed: bool
    automated: bool = False


# Shipment Events
class ShipmentCreatedEvent(BaseEvent):
    """Emitted when a shipment is opened."""
    event_type: EventType = EventType.SHIPMENT_CREATED
    tracking_number: str
    product_id: UUID
    status: str


class ShipmentStatusUpdatedEvent(BaseEvent):
    """Emitted on every shipment status update."""
    event_type: EventType = EventType.SHIPMENT_STATUS_UPDATED
    tracking_number: str
    from_status: str
    to_status: str
    location: str


class ShipmentDelayReportedEvent(BaseEvent):
    """Emitted when a delay is reported on a shipment."""
    event_type: EventType = EventType.SHIPMENT_DELAY_REPORTED
    tracking_number: str
    from_status: str
    reason: str


class ShipmentDelayResolvedEvent(BaseEvent):
    """Emitted when a reported delay is resolved."""
    event_type: EventType = EventType.SHIPMENT_DELAY_RESOLVED
    tracking_number: str
    delay_index: int
    reason: Optional[str] = None
    reported_at: Optional[datetime] = None
    resolved_at: datetime


# Transaction Events
class TransactionCreatedEvent(BaseEvent):
    """Emitted when an ownership transfer is opened."""
    event_type: EventType = EventType.TRANSACTION_CREATED
    product_id: UUID
    status: str


class TransactionStatusUpdatedEvent(BaseEvent):
    """Emitted on every transaction status update."""
    event_type: EventType = EventType.TRANSACTION_STATUS_UPDATED
    product_id: UUID
    from_status: str
    to_status: str


# Event Registry for deserialization
EVENT_REGISTRY: Dict[EventType, type[BaseEvent]] = {
    EventType.PRODUCT_CREATED: ProductCreatedEvent,
    EventType.PRODUCT_STATUS_CHANGED: ProductStatusChangedEvent,
    EventType.PRODUCT_QUALITY_CHECKED: ProductQualityCheckedEvent,

    EventType.SHIPMENT_CREATED: ShipmentCreatedEvent,
    EventType.SHIPMENT_STATUS_UPDATED: ShipmentStatusUpdatedEvent,
    EventType.SHIPMENT_DELAY_REPORTED: ShipmentDelayReportedEvent,
    EventType.SHIPMENT_DELAY_RESOLVED: ShipmentDelayResolvedEvent,

    EventType.TRANSACTION_CREATED: TransactionCreatedEvent,
    EventType.TRANSACTION_STATUS_UPDATED: TransactionStatusUpdatedEvent,
}


def deserialize_event(event_data: Dict[str, Any]) -> BaseEvent:
    """Deserialize event from dictionary."""
    event_type = EventType(event_data["event_type"])
    event_class = EVENT_REGISTRY.get(event_type, BaseEvent)
    return event_class(**event_data)
