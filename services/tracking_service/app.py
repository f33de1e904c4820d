"""Tracking Service FastAPI application."""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from supplychain_shared.auth import Actor, InvalidCredentialsError, Role, decode_actor
from supplychain_shared.config import Settings
from supplychain_shared.database import Database
from supplychain_shared.message_broker import MessageBroker
from supplychain_shared.outbox import OutboxPublisher

from .exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    InvalidTransitionError,
    LifecycleError,
    NotFoundError,
    ValidationError,
)
from .lifecycle_engine import LifecycleEngine, timeline_of
from .models import Product, Shipment, Transaction

# Settings
settings = Settings(
    service_name="tracking-service",
    service_port=8001,
    postgres_db="tracking_db",
)

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Database and message broker
database = Database(settings.database_url)
message_broker = MessageBroker(settings.rabbitmq_url)
outbox_publisher: Optional[OutboxPublisher] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""
    global outbox_publisher

    # Startup
    logger.info("Starting Tracking Service...")

    await database.create_tables()
    await message_broker.connect()

    outbox_publisher = OutboxPublisher(
        session_factory=database.session_factory,
        message_broker=message_broker,
        poll_interval=1,
        batch_size=100,
    )
    await outbox_publisher.start()

    logger.info("Tracking Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Tracking Service...")
    if outbox_publisher:
        await outbox_publisher.stop()
    await message_broker.disconnect()
    await database.close()


app = FastAPI(title="Tracking Service", lifespan=lifespan)

ERROR_STATUS_CODES = {
    NotFoundError: 404,
    ValidationError: 422,
    ForbiddenError: 403,
    InvalidTransitionError: 409,
    InvalidStateError: 409,
    ConflictError: 409,
}


@app.exception_handler(LifecycleError)
async def lifecycle_error_handler(request: Request, exc: LifecycleError):
    """Translate engine errors into JSON responses."""
    status_code = ERROR_STATUS_CODES.get(type(exc), 400)
    return JSONResponse(status_code=status_code, content={"detail": exc.to_dict()})


async def get_session():
    """Get database session."""
    async for session in database.get_session():
        yield session


bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_actor(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Actor:
    """Resolve the acting party from the bearer token."""
    if credentials is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        return decode_actor(credentials.credentials, settings.jwt_secret_key, settings.jwt_algorithm)
    except InvalidCredentialsError as e:
        raise HTTPException(status_code=401, detail=str(e))


def get_engine(session: AsyncSession = Depends(get_session)) -> LifecycleEngine:
    return LifecycleEngine(session, auto_quality_check_enabled=settings.auto_quality_check_enabled)


# Request/Response models
class Reference(BaseModel):
    """Resolved party reference."""
    id: str
    name: str


class TimelineEntry(BaseModel):
    """One lifecycle event on a product."""
    status: str
    title: str
    date: datetime
    location: str
    handler: Reference
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class QualityCheckDetails(BaseModel):
    """Individual inspection outcomes."""
    visual_inspection: Optional[str] = None
    measurement_check: Optional[str] = None
    functional_test: Optional[str] = None


class QualityCheckRecord(BaseModel):
    """Stored quality check."""
    passed: bool
    notes: Optional[str] = None
    check_details: QualityCheckDetails
    performed_by: Reference
    performed_at: datetime
    automated: bool = False


class CreateProductRequest(BaseModel):
    """Request to register a manufactured product."""
    name: str
    current_location: str
    category: Optional[str] = None
    sub_category: Optional[str] = None
    description: Optional[str] = None
    quantity: int = 0
    price: float = 0.0
    specifications: Dict[str, Any] = Field(default_factory=dict)


class StatusTransitionRequest(BaseModel):
    """Request to move a product to another lifecycle state."""
    status: str
    location: Optional[str] = None
    notes: Optional[str] = None


class QualityCheckRequest(BaseModel):
    """Inspector's quality check outcome."""
    passed: bool
    notes: Optional[str] = None
    check_details: QualityCheckDetails = Field(default_factory=QualityCheckDetails)


class ProductResponse(BaseModel):
    """Product response."""
    id: UUID
    tracking_number: str
    name: str
    category: Optional[str]
    sub_category: Optional[str]
    description: Optional[str]
    quantity: int
    price: float
    specifications: Dict[str, Any]
    status: str
    current_location: str
    current_owner: Reference
    manufacturer: Reference
    timeline: List[TimelineEntry]
    quality_check: Optional[QualityCheckRecord]
    created_at: datetime
    updated_at: Optional[datetime]

    class Config:
        from_attributes = True


class CreateShipmentRequest(BaseModel):
    """Request to open a shipment."""
    product_id: UUID
    to_user_id: str
    expected_delivery_date: datetime
    from_user_id: Optional[str] = None
    origin: str = "Origin"
    notes: Optional[str] = None


class ShipmentStatusRequest(BaseModel):
    """Request to set a shipment's status."""
    status: str
    location: Optional[str] = None


class ShipmentDelayRequest(BaseModel):
    """Request to report a shipment delay."""
    reason: str
    notes: Optional[str] = None


class ShipmentDelay(BaseModel):
    reason: str
    reported_at: datetime
    resolved_at: Optional[datetime] = None
    notes: Optional[str] = None


class LocationHistoryEntry(BaseModel):
    location: str
    timestamp: datetime
    status: str


class ShipmentResponse(BaseModel):
    """Shipment response."""
    id: UUID
    tracking_number: str
    product_id: UUID
    from_user_id: str
    to_user_id: str
    status: str
    expected_delivery_date: datetime
    delivered_at: Optional[datetime]
    delays: List[ShipmentDelay]
    current_location: str
    location_history: List[LocationHistoryEntry]
    notes: Optional[str]
    created_at: datetime
    updated_at: Optional[datetime]

    class Config:
        from_attributes = True


class CreateTransactionRequest(BaseModel):
    """Request to open an ownership transfer."""
    product_id: UUID
    to_user_id: str
    quantity: int = 1
    from_user_id: Optional[str] = None
    note: Optional[str] = None


class TransactionStatusRequest(BaseModel):
    """Request to set a transaction's status."""
    status: str
    note: Optional[str] = None


class TransactionNote(BaseModel):
    timestamp: datetime
    status: str
    text: str
    updated_by: Reference


class TransactionResponse(BaseModel):
    """Transaction response."""
    id: UUID
    product_id: UUID
    from_user_id: str
    to_user_id: str
    quantity: int
    status: str
    notes: List[TransactionNote]
    created_at: datetime

    class Config:
        from_attributes = True


def product_response(product: Product) -> ProductResponse:
    return ProductResponse.model_validate(product)


def shipment_response(shipment: Shipment) -> ShipmentResponse:
    return ShipmentResponse.model_validate(shipment)


def transaction_response(transaction: Transaction) -> TransactionResponse:
    return TransactionResponse.model_validate(transaction)


# Product Endpoints
@app.post("/products", response_model=ProductResponse, status_code=201)
async def create_product(
    request: CreateProductRequest,
    actor: Actor = Depends(get_current_actor),
    engine: LifecycleEngine = Depends(get_engine),
):
    """Register a product; the timeline starts at 'manufactured'."""
    product = await engine.create_product(request.model_dump(), actor)
    return product_response(product)


@app.get("/products", response_model=List[ProductResponse])
async def list_products(
    status: Optional[str] = None,
    category: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(get_current_actor),
    engine: LifecycleEngine = Depends(get_engine),
):
    """List products, newest first."""
    products = await engine.list_products(status=status, category=category, limit=limit, offset=offset)
    return [product_response(product) for product in products]


@app.get("/products/track/{tracking_number}", response_model=ProductResponse)
async def track_product(
    tracking_number: str,
    actor: Actor = Depends(get_current_actor),
    engine: LifecycleEngine = Depends(get_engine),
):
    """Look up a product by its public tracking number."""
    return product_response(await engine.get_product_by_tracking_number(tracking_number))


@app.get("/products/{product_id}", response_model=ProductResponse)
async def get_product(
    product_id: UUID,
    actor: Actor = Depends(get_current_actor),
    engine: LifecycleEngine = Depends(get_engine),
):
    """Get product by ID."""
    return product_response(await engine.get_product(product_id))


@app.get("/products/{product_id}/timeline", response_model=List[TimelineEntry])
async def get_product_timeline(
    product_id: UUID,
    actor: Actor = Depends(get_current_actor),
    engine: LifecycleEngine = Depends(get_engine),
):
    """Full lifecycle timeline, oldest entry first."""
    return timeline_of(await engine.get_product(product_id))


@app.patch("/products/{product_id}/status", response_model=ProductResponse)
async def update_product_status(
    product_id: UUID,
    request: StatusTransitionRequest,
    actor: Actor = Depends(get_current_actor),
    engine: LifecycleEngine = Depends(get_engine),
):
    """Request a lifecycle transition."""
    product = await engine.request_status_transition(
        product_id,
        actor,
        target_status=request.status,
        location=request.location,
        notes=request.notes,
    )
    return product_response(product)


@app.post("/products/{product_id}/quality-check", response_model=ProductResponse)
async def quality_check(
    product_id: UUID,
    request: QualityCheckRequest,
    actor: Actor = Depends(get_current_actor),
    engine: LifecycleEngine = Depends(get_engine),
):
    """Record an inspector's quality check."""
    product = await engine.perform_quality_check(
        product_id,
        actor,
        passed=request.passed,
        notes=request.notes,
        check_details=request.check_details.model_dump(),
    )
    return product_response(product)


@app.post("/products/{product_id}/auto-quality-check", response_model=ProductResponse)
async def auto_quality_check(
    product_id: UUID,
    actor: Actor = Depends(get_current_actor),
    engine: LifecycleEngine = Depends(get_engine),
):
    """Pass a quality check without inspector input (only when enabled)."""
    return product_response(await engine.auto_quality_check(product_id, actor))


# Shipment Endpoints
@app.post("/shipments", response_model=ShipmentResponse, status_code=201)
async def create_shipment(
    request: CreateShipmentRequest,
    actor: Actor = Depends(get_current_actor),
    engine: LifecycleEngine = Depends(get_engine),
):
    """Open a shipment for a product."""
    shipment = await engine.create_shipment(
        product_id=request.product_id,
        to_user_id=request.to_user_id,
        expected_delivery_date=request.expected_delivery_date,
        actor=actor,
        from_user_id=request.from_user_id,
        origin=request.origin,
        notes=request.notes,
    )
    return shipment_response(shipment)


@app.get("/shipments/{shipment_id}", response_model=ShipmentResponse)
async def get_shipment(
    shipment_id: UUID,
    actor: Actor = Depends(get_current_actor),
    engine: LifecycleEngine = Depends(get_engine),
):
    """Get shipment by ID."""
    return shipment_response(await engine.get_shipment(shipment_id))


@app.put("/shipments/{shipment_id}/status", response_model=ShipmentResponse)
async def update_shipment_status(
    shipment_id: UUID,
    request: ShipmentStatusRequest,
    actor: Actor = Depends(get_current_actor),
    engine: LifecycleEngine = Depends(get_engine),
):
    """Set a shipment's status."""
    shipment = await engine.update_shipment_status(shipment_id, request.status, request.location, actor)
    return shipment_response(shipment)


@app.post("/shipments/{shipment_id}/delays", response_model=ShipmentResponse)
async def report_shipment_delay(
    shipment_id: UUID,
    request: ShipmentDelayRequest,
    actor: Actor = Depends(get_current_actor),
    engine: LifecycleEngine = Depends(get_engine),
):
    """Report a delay on a shipment."""
    shipment = await engine.report_shipment_delay(shipment_id, request.reason, actor, notes=request.notes)
    return shipment_response(shipment)


@app.post("/shipments/{shipment_id}/delays/{delay_index}/resolve", response_model=ShipmentResponse)
async def resolve_shipment_delay(
    shipment_id: UUID,
    delay_index: int,
    actor: Actor = Depends(get_current_actor),
    engine: LifecycleEngine = Depends(get_engine),
):
    """Mark a reported delay as resolved."""
    shipment = await engine.resolve_shipment_delay(shipment_id, delay_index, actor)
    return shipment_response(shipment)


# Transaction Endpoints
@app.post("/transactions", response_model=TransactionResponse, status_code=201)
async def create_transaction(
    request: CreateTransactionRequest,
    actor: Actor = Depends(get_current_actor),
    engine: LifecycleEngine = Depends(get_engine),
):
    """Open an ownership transfer."""
    transaction = await engine.create_transaction(
        product_id=request.product_id,
        to_user_id=request.to_user_id,
        actor=actor,
        quantity=request.quantity,
        from_user_id=request.from_user_id,
        note=request.note,
    )
    return transaction_response(transaction)


@app.get("/transactions/product/{product_id}", response_model=List[TransactionResponse])
async def list_product_transactions(
    product_id: UUID,
    actor: Actor = Depends(get_current_actor),
    engine: LifecycleEngine = Depends(get_engine),
):
    """All transactions for a product, newest first."""
    transactions = await engine.list_transactions_for_product(product_id)
    return [transaction_response(transaction) for transaction in transactions]


@app.get("/transactions/{transaction_id}", response_model=TransactionResponse)
async def get_transaction(
    transaction_id: UUID,
    actor: Actor = Depends(get_current_actor),
    engine: LifecycleEngine = Depends(get_engine),
):
    """Get transaction by ID."""
    return transaction_response(await engine.get_transaction(transaction_id))


@app.put("/transactions/{transaction_id}/status", response_model=TransactionResponse)
async def update_transaction_status(
    transaction_id: UUID,
    request: TransactionStatusRequest,
    actor: Actor = Depends(get_current_actor),
    engine: LifecycleEngine = Depends(get_engine),
):
    """Set a transaction's status."""
    transaction = await engine.update_transaction_status(transaction_id, request.status, request.note, actor)
    return transaction_response(transaction)


@app.post("/admin/outbox/retry")
async def retry_failed_outbox_messages(actor: Actor = Depends(get_current_actor)):
    """Re-queue outbox messages that exhausted their publish retries."""
    if actor.role != Role.ADMIN:
        raise HTTPException(status_code=403, detail="Admin only")
    if not outbox_publisher:
        raise HTTPException(status_code=503, detail="Outbox publisher not running")
    requeued = await outbox_publisher.retry_failed_messages()
    return {"status": "requeued", "count": requeued}


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "tracking-service"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
