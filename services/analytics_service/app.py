"""Analytics Service FastAPI application."""
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import FastAPI
from pydantic import BaseModel
from redis import asyncio as aioredis

from supplychain_shared.config import Settings
from supplychain_shared.events import (
    BaseEvent,
    EventType,
    ProductCreatedEvent,
    ProductQualityCheckedEvent,
    ProductStatusChangedEvent,
    ShipmentCreatedEvent,
    ShipmentDelayReportedEvent,
    ShipmentDelayResolvedEvent,
    ShipmentStatusUpdatedEvent,
    TransactionCreatedEvent,
    TransactionStatusUpdatedEvent,
)
from supplychain_shared.message_broker import MessageBroker

# Settings
settings = Settings(
    service_name="analytics-service",
    service_port=8006,
)

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Message broker and Redis
message_broker = MessageBroker(settings.rabbitmq_url)
redis_client: Optional[aioredis.Redis] = None

PRODUCT_STATUS_KEY = "metrics:products:status"
PRODUCT_CATEGORY_KEY = "metrics:products:category"
SHIPMENT_STATUS_KEY = "metrics:shipments:status"
TRANSACTION_STATUS_KEY = "metrics:transactions:status"
QUALITY_PASSED_KEY = "metrics:quality:passed"
QUALITY_FAILED_KEY = "metrics:quality:failed"
DELAYS_REPORTED_KEY = "metrics:shipments:delays_reported"
# per-reason hashes
DELAY_REASON_KEY = "metrics:delays:reported"
DELAY_RESOLVED_KEY = "metrics:delays:resolved"
DELAY_RESOLUTION_SECONDS_KEY = "metrics:delays:resolution_seconds"
UNCATEGORIZED = "uncategorized"
EVENT_TIMELINE_KEY = "events:timeline"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""
    global redis_client

    # Startup
    logger.info("Starting Analytics Service...")

    redis_client = await aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True
    )

    await message_broker.connect()
    await subscribe_to_events()

    logger.info("Analytics Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Analytics Service...")
    await message_broker.disconnect()
    if redis_client:
        await redis_client.close()


app = FastAPI(title="Analytics Service", lifespan=lifespan)


# Response models
class DelayReasonStats(BaseModel):
    """Delay count and resolution time for one reported reason."""
    reason: str
    count: int
    resolved: int
    average_resolution_hours: Optional[float] = None


class DashboardMetricsResponse(BaseModel):
    """Supply chain dashboard metrics."""
    total_products: int
    total_shipments: int
    total_transactions: int
    product_status: Dict[str, int]
    product_categories: Dict[str, int]
    shipment_status: Dict[str, int]
    transaction_status: Dict[str, int]
    supply_chain_health: int
    quality_score: int
    quality_checks_passed: int
    quality_checks_failed: int
    delayed_shipments: int
    delays_reported: int
    delay_reasons: List[DelayReasonStats]


class EventStatsResponse(BaseModel):
    """Event statistics response."""
    event_type: str
    count: int


def _percentage(part: int, whole: int) -> int:
    # no data counts as healthy
    if whole <= 0:
        return 100
    return round(part / whole * 100)


def _non_zero(counts: Dict[str, int]) -> Dict[str, int]:
    return {k: v for k, v in counts.items() if v > 0}


def build_delay_reason_stats(
    reported: Dict[str, int],
    resolved: Dict[str, int],
    resolution_seconds: Dict[str, float],
) -> List[DelayReasonStats]:
    """Per-reason delay figures, most frequent reason first."""
    stats = []
    for reason, count in _non_zero(reported).items():
        resolved_count = resolved.get(reason, 0)
        average = None
        if resolved_count > 0:
            average = round(resolution_seconds.get(reason, 0.0) / resolved_count / 3600, 2)
        stats.append(DelayReasonStats(
            reason=reason,
            count=count,
            resolved=resolved_count,
            average_resolution_hours=average,
        ))
    return sorted(stats, key=lambda s: (-s.count, s.reason))


def build_dashboard_metrics(
    product_status: Dict[str, int],
    shipment_status: Dict[str, int],
    transaction_status: Dict[str, int],
    quality_passed: int,
    quality_failed: int,
    delays_reported: int = 0,
    product_categories: Optional[Dict[str, int]] = None,
    delay_reasons: Optional[List[DelayReasonStats]] = None,
) -> DashboardMetricsResponse:
    """
    Derive dashboard figures from the raw counters.

    Supply chain health is the share of delivered shipments; quality score
    is the share of passed quality checks. Both are whole percentages.
    """
    product_status = _non_zero(product_status)
    shipment_status = _non_zero(shipment_status)
    transaction_status = _non_zero(transaction_status)

    total_shipments = sum(shipment_status.values())

    return DashboardMetricsResponse(
        total_products=sum(product_status.values()),
        total_shipments=total_shipments,
        total_transactions=sum(transaction_status.values()),
        product_status=product_status,
        product_categories=_non_zero(product_categories or {}),
        shipment_status=shipment_status,
        transaction_status=transaction_status,
        supply_chain_health=_percentage(shipment_status.get("delivered", 0), total_shipments),
        quality_score=_percentage(quality_passed, quality_passed + quality_failed),
        quality_checks_passed=quality_passed,
        quality_checks_failed=quality_failed,
        delayed_shipments=shipment_status.get("delayed", 0),
        delays_reported=delays_reported,
        delay_reasons=delay_reasons or [],
    )


async def _read_counts(key: str) -> Dict[str, int]:
    raw = await redis_client.hgetall(key)
    return {field: int(count) for field, count in raw.items()}


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "analytics-service"}


@app.get("/metrics/dashboard", response_model=DashboardMetricsResponse)
async def get_dashboard_metrics():
    """Dashboard metrics, eventually consistent with the tracking service."""
    if not redis_client:
        return build_dashboard_metrics({}, {}, {}, 0, 0)

    resolution_seconds = await redis_client.hgetall(DELAY_RESOLUTION_SECONDS_KEY)

    return build_dashboard_metrics(
        product_status=await _read_counts(PRODUCT_STATUS_KEY),
        shipment_status=await _read_counts(SHIPMENT_STATUS_KEY),
        transaction_status=await _read_counts(TRANSACTION_STATUS_KEY),
        quality_passed=int(await redis_client.get(QUALITY_PASSED_KEY) or 0),
        quality_failed=int(await redis_client.get(QUALITY_FAILED_KEY) or 0),
        delays_reported=int(await redis_client.get(DELAYS_REPORTED_KEY) or 0),
        product_categories=await _read_counts(PRODUCT_CATEGORY_KEY),
        delay_reasons=build_delay_reason_stats(
            reported=await _read_counts(DELAY_REASON_KEY),
            resolved=await _read_counts(DELAY_RESOLVED_KEY),
            resolution_seconds={reason: float(total) for reason, total in resolution_seconds.items()},
        ),
    )


@app.get("/events/stats")
async def get_event_stats():
    """Get event type statistics."""
    if not redis_client:
        return []

    stats = []
    for event_type in EventType:
        count = int(await redis_client.get(f"events:count:{event_type.value}") or 0)
        if count > 0:
            stats.append(EventStatsResponse(event_type=event_type.value, count=count))

    return stats


@app.get("/events/recent")
async def get_recent_events(limit: int = 20):
    """Most recent lifecycle events, newest first."""
    if not redis_client:
        return []

    recent = await redis_client.zrevrange(EVENT_TIMELINE_KEY, 0, limit - 1, withscores=True)

    events = []
    for event_data, timestamp in recent:
        event_info = json.loads(event_data)
        event_info["timestamp"] = datetime.fromtimestamp(timestamp).isoformat()
        events.append(event_info)

    return events


# Analytics Logic
async def track_event(event: BaseEvent):
    """Count the event and keep it in the capped recent timeline."""
    if not redis_client:
        return

    await redis_client.incr(f"events:count:{event.event_type.value}")

    event_data = {
        "event_id": str(event.event_id),
        "event_type": event.event_type.value,
        "aggregate_id": str(event.aggregate_id),
        "actor_id": event.actor_id,
    }

    await redis_client.zadd(
        EVENT_TIMELINE_KEY,
        {json.dumps(event_data): event.timestamp.timestamp()}
    )

    # Keep only last 1000 events
    await redis_client.zremrangebyrank(EVENT_TIMELINE_KEY, 0, -1001)


async def move_status_count(key: str, from_status: Optional[str], to_status: str):
    """Shift one entity between status buckets of a distribution hash."""
    if not redis_client or from_status == to_status:
        return

    if from_status:
        await redis_client.hincrby(key, from_status, -1)
    await redis_client.hincrby(key, to_status, 1)


async def handle_product_created(event: ProductCreatedEvent):
    await track_event(event)
    await move_status_count(PRODUCT_STATUS_KEY, None, event.status)
    if redis_client:
        await redis_client.hincrby(PRODUCT_CATEGORY_KEY, event.category or UNCATEGORIZED, 1)
    logger.info(f"Analytics: product created {event.aggregate_id}")


async def handle_product_status_changed(event: ProductStatusChangedEvent):
    await track_event(event)
    await move_status_count(PRODUCT_STATUS_KEY, event.from_status, event.to_status)
    logger.info(f"Analytics: product {event.aggregate_id} {event.from_status} -> {event.to_status}")


async def handle_quality_checked(event: ProductQualityCheckedEvent):
    await track_event(event)
    if redis_client:
        await redis_client.incr(QUALITY_PASSED_KEY if event.passed else QUALITY_FAILED_KEY)
    logger.info(f"Analytics: quality check on {event.aggregate_id} passed={event.passed}")


async def handle_shipment_created(event: ShipmentCreatedEvent):
    await track_event(event)
    await move_status_count(SHIPMENT_STATUS_KEY, None, event.status)


async def handle_shipment_status_updated(event: ShipmentStatusUpdatedEvent):
    await track_event(event)
    await move_status_count(SHIPMENT_STATUS_KEY, event.from_status, event.to_status)


async def handle_shipment_delay_reported(event: ShipmentDelayReportedEvent):
    await track_event(event)
    await move_status_count(SHIPMENT_STATUS_KEY, event.from_status, "delayed")
    if redis_client:
        await redis_client.incr(DELAYS_REPORTED_KEY)
        await redis_client.hincrby(DELAY_REASON_KEY, event.reason, 1)


async def handle_shipment_delay_resolved(event: ShipmentDelayResolvedEvent):
    await track_event(event)
    if not redis_client or not event.reason:
        return

    await redis_client.hincrby(DELAY_RESOLVED_KEY, event.reason, 1)
    if event.reported_at:
        elapsed = (event.resolved_at - event.reported_at).total_seconds()
        await redis_client.hincrbyfloat(DELAY_RESOLUTION_SECONDS_KEY, event.reason, max(elapsed, 0.0))


async def handle_transaction_created(event: TransactionCreatedEvent):
    await track_event(event)
    await move_status_count(TRANSACTION_STATUS_KEY, None, event.status)


async def handle_transaction_status_updated(event: TransactionStatusUpdatedEvent):
    await track_event(event)
    await move_status_count(TRANSACTION_STATUS_KEY, event.from_status, event.to_status)


EVENT_HANDLERS = {
    EventType.PRODUCT_CREATED: handle_product_created,
    EventType.PRODUCT_STATUS_CHANGED: handle_product_status_changed,
    EventType.PRODUCT_QUALITY_CHECKED: handle_quality_checked,
    EventType.SHIPMENT_CREATED: handle_shipment_created,
    EventType.SHIPMENT_STATUS_UPDATED: handle_shipment_status_updated,
    EventType.SHIPMENT_DELAY_REPORTED: handle_shipment_delay_reported,
    EventType.SHIPMENT_DELAY_RESOLVED: handle_shipment_delay_resolved,
    EventType.TRANSACTION_CREATED: handle_transaction_created,
    EventType.TRANSACTION_STATUS_UPDATED: handle_transaction_status_updated,
}


# Event Handlers
async def subscribe_to_events():
    """Subscribe to lifecycle events for analytics."""
    for event_type, handler in EVENT_HANDLERS.items():
        await message_broker.subscribe_to_event(
            event_type,
            f"analytics_service_{event_type.value.replace('.', '_')}",
            handler,
        )

    logger.info("Subscribed to analytics events")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
