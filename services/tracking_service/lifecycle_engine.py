"""Lifecycle engine for products, shipments and transactions."""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from supplychain_shared.auth import Actor, Role
from supplychain_shared.events import (
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
from supplychain_shared.outbox import save_event_to_outbox

from .exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from .lifecycle import (
    INITIAL_STATE,
    PRODUCT_CREATOR_ROLES,
    QUALITY_CHECK_ROLES,
    QUALITY_CHECK_STATES,
    TIMELINE_TITLES,
    can_transition,
    has_lifecycle_edges,
    parse_status,
    state_before_delay,
)
from .models import (
    Product,
    ProductStatus,
    Shipment,
    ShipmentStatus,
    Transaction,
    TransactionStatus,
)

logger = logging.getLogger(__name__)

# May update any shipment or transaction, party or not
PRIVILEGED_ROLES = frozenset({Role.ADMIN, Role.MANUFACTURER})

AUTO_QUALITY_CHECK_NOTE = "Automated quality check process"


def _now() -> datetime:
    return datetime.utcnow()


def _require_text(field: str, value: Optional[str], entity_id: Optional[str] = None) -> str:
    if value is None or not value.strip():
        raise ValidationError(field, "is required", entity_id=entity_id)
    return value.strip()


def _generate_tracking_number(prefix: str) -> str:
    return f"{prefix}{uuid4().hex[:12].upper()}"


class LifecycleEngine:
    """
    Applies lifecycle changes to one aggregate per call.

    Each operation reads the current row, validates the change, appends the
    history entry, saves the domain event to the outbox and commits. The
    row's ``version`` column guards the update, so a concurrent writer that
    got there first turns this call into a ``ConflictError``.
    """

    def __init__(self, session: AsyncSession, auto_quality_check_enabled: bool = False):
        self.session = session
        self.auto_quality_check_enabled = auto_quality_check_enabled

    # Products

    async def create_product(self, attributes: Dict[str, Any], actor: Actor) -> Product:
        """
        Register a new product at ``manufactured``.

        Args:
            attributes: name, current_location and optional catalog fields
                (category, sub_category, description, quantity, price,
                specifications)
            actor: Creating party, must be a manufacturer or admin

        Returns:
            The stored product with a one-entry timeline
        """
        if actor.role not in PRODUCT_CREATOR_ROLES:
            raise ForbiddenError(actor.role.value, "create products")

        name = _require_text("name", attributes.get("name"))
        location = _require_text("current_location", attributes.get("current_location"))

        now = _now()
        entry = self._timeline_entry(
            status=INITIAL_STATE,
            location=location,
            actor=actor,
            description=attributes.get("description") or "Product added to inventory",
            date=now,
        )

        product = Product(
            id=uuid4(),
            tracking_number=_generate_tracking_number("TRK"),
            name=name,
            category=attributes.get("category"),
            sub_category=attributes.get("sub_category"),
            description=attributes.get("description"),
            quantity=attributes.get("quantity") or 0,
            price=attributes.get("price") or 0.0,
            specifications=dict(attributes.get("specifications") or {}),
            status=INITIAL_STATE.value,
            current_location=location,
            current_owner=actor.reference(),
            manufacturer=actor.reference(),
            timeline=[entry],
            created_at=now,
            updated_at=now,
        )
        self.session.add(product)

        await save_event_to_outbox(self.session, ProductCreatedEvent(
            aggregate_id=product.id,
            actor_id=actor.user_id,
            tracking_number=product.tracking_number,
            category=product.category,
            status=product.status,
        ))

        await self.session.commit()

        logger.info(f"Created product {product.id} ({product.tracking_number}) by {actor.user_id}")

        return product

    async def request_status_transition(
        self,
        product_id: UUID,
        actor: Actor,
        target_status: str,
        location: Optional[str],
        notes: Optional[str] = None,
    ) -> Product:
        """
        Move a product along its lifecycle.

        Raises:
            ForbiddenError: the role has no lifecycle edges at all
            ValidationError: unknown target status or missing location
            NotFoundError: no such product
            InvalidTransitionError: the table has no edge for this move
            ConflictError: another request changed the product first
        """
        if not has_lifecycle_edges(actor.role):
            raise ForbiddenError(actor.role.value, "change product status", entity_id=str(product_id))

        target = parse_status(target_status)
        if target is None:
            raise ValidationError("status", f"'{target_status}' is not a lifecycle state",
                                  entity_id=str(product_id))
        location = _require_text("location", location, entity_id=str(product_id))

        product = await self._get_or_raise(Product, product_id)
        current = ProductStatus(product.status)
        resume_status = state_before_delay(product.timeline) if current == ProductStatus.DELAYED else None

        if not can_transition(actor.role, current, target, resume_status):
            logger.warning(
                f"Rejected transition of product {product.id}: "
                f"{current.value} -> {target.value} by {actor.role.value}"
            )
            raise InvalidTransitionError(str(product.id), actor.role.value, current.value, target.value)

        self._append_timeline(
            product,
            status=target,
            location=location,
            actor=actor,
            description=notes,
            metadata={"previous_status": current.value},
        )

        await save_event_to_outbox(self.session, ProductStatusChangedEvent(
            aggregate_id=product.id,
            actor_id=actor.user_id,
            tracking_number=product.tracking_number,
            from_status=current.value,
            to_status=target.value,
            location=location,
        ))

        await self._commit("Product", product.id)

        logger.info(
            f"Product {product.id} moved {current.value} -> {target.value} by {actor.user_id}"
        )

        return product

    async def perform_quality_check(
        self,
        product_id: UUID,
        actor: Actor,
        passed: bool,
        notes: Optional[str] = None,
        check_details: Optional[Dict[str, Any]] = None,
    ) -> Product:
        """
        Record an inspector's quality check.

        A pass moves the product to ``in-supply`` with one timeline entry.
        A fail only stores the record; the status stays where it is.
        """
        return await self._record_quality_check(
            product_id,
            actor,
            passed=passed,
            notes=notes,
            check_details=check_details,
            automated=False,
        )

    async def auto_quality_check(self, product_id: UUID, actor: Actor) -> Product:
        """Pass a quality check without inspector input, if policy allows it."""
        if not self.auto_quality_check_enabled:
            raise ForbiddenError(
                actor.role.value,
                "run automated quality checks while they are disabled",
                entity_id=str(product_id),
            )
        return await self._record_quality_check(
            product_id,
            actor,
            passed=True,
            notes=AUTO_QUALITY_CHECK_NOTE,
            check_details=None,
            automated=True,
        )

    async def _record_quality_check(
        self,
        product_id: UUID,
        actor: Actor,
        passed: bool,
        notes: Optional[str],
        check_details: Optional[Dict[str, Any]],
        automated: bool,
    ) -> Product:
        if actor.role not in QUALITY_CHECK_ROLES:
            raise ForbiddenError(actor.role.value, "perform quality checks", entity_id=str(product_id))

        product = await self._get_or_raise(Product, product_id)
        current = ProductStatus(product.status)
        if current not in QUALITY_CHECK_STATES:
            raise InvalidStateError(str(product.id), current.value, "'quality-check' or 'manufactured'")

        details = check_details or {}
        performed_at = _now()
        product.quality_check = {
            "passed": passed,
            "notes": notes,
            "check_details": {
                "visual_inspection": details.get("visual_inspection"),
                "measurement_check": details.get("measurement_check"),
                "functional_test": details.get("functional_test"),
            },
            "performed_by": actor.reference(),
            "performed_at": performed_at.isoformat(),
            "automated": automated,
        }

        if passed:
            self._append_timeline(
                product,
                status=ProductStatus.IN_SUPPLY,
                location=product.current_location,
                actor=actor,
                description=notes or "Quality check passed",
                metadata={"previous_status": current.value, "quality_check": True},
                date=performed_at,
            )
            await save_event_to_outbox(self.session, ProductStatusChangedEvent(
                aggregate_id=product.id,
                actor_id=actor.user_id,
                tracking_number=product.tracking_number,
                from_status=current.value,
                to_status=ProductStatus.IN_SUPPLY.value,
                location=product.current_location,
            ))
        else:
            product.updated_at = performed_at

        await save_event_to_outbox(self.session, ProductQualityCheckedEvent(
            aggregate_id=product.id,
            actor_id=actor.user_id,
            tracking_number=product.tracking_number,
            passed=passed,
            automated=automated,
        ))

        await self._commit("Product", product.id)

        logger.info(
            f"Quality check on product {product.id} "
            f"{'passed' if passed else 'failed'} by {actor.user_id}"
            f"{' (automated)' if automated else ''}"
        )

        return product

    async def get_product(self, product_id: UUID) -> Product:
        return await self._get_or_raise(Product, product_id)

    async def get_product_by_tracking_number(self, tracking_number: str) -> Product:
        result = await self.session.execute(
            select(Product).where(Product.tracking_number == tracking_number)
        )
        product = result.scalar_one_or_none()
        if not product:
            raise NotFoundError("Product", tracking_number)
        return product

    async def list_products(
        self,
        status: Optional[str] = None,
        category: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Sequence[Product]:
        query = select(Product).order_by(Product.created_at.desc())
        if status:
            if parse_status(status) is None:
                raise ValidationError("status", f"'{status}' is not a lifecycle state")
            query = query.where(Product.status == status)
        if category:
            query = query.where(Product.category == category)

        result = await self.session.execute(query.limit(limit).offset(offset))
        return result.scalars().all()

    # Shipments

    async def create_shipment(
        self,
        product_id: UUID,
        to_user_id: str,
        expected_delivery_date: Optional[datetime],
        actor: Actor,
        from_user_id: Optional[str] = None,
        origin: str = "Origin",
        notes: Optional[str] = None,
    ) -> Shipment:
        """Open a shipment; the acting party is the sender unless stated otherwise."""
        to_user_id = _require_text("to_user_id", to_user_id)
        if expected_delivery_date is None:
            raise ValidationError("expected_delivery_date", "is required")
        from_user_id = from_user_id or actor.user_id
        self._ensure_party(actor, from_user_id, to_user_id, "open shipments for other parties")

        await self._get_or_raise(Product, product_id)

        now = _now()
        origin = origin or "Origin"
        shipment = Shipment(
            id=uuid4(),
            tracking_number=_generate_tracking_number("SHP"),
            product_id=product_id,
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            status=ShipmentStatus.PENDING.value,
            expected_delivery_date=expected_delivery_date,
            delays=[],
            current_location=origin,
            location_history=[{
                "location": origin,
                "timestamp": now.isoformat(),
                "status": ShipmentStatus.PENDING.value,
            }],
            notes=notes,
            created_at=now,
            updated_at=now,
        )
        self.session.add(shipment)

        await save_event_to_outbox(self.session, ShipmentCreatedEvent(
            aggregate_id=shipment.id,
            actor_id=actor.user_id,
            tracking_number=shipment.tracking_number,
            product_id=product_id,
            status=shipment.status,
        ))

        await self.session.commit()

        logger.info(f"Created shipment {shipment.id} ({shipment.tracking_number}) for product {product_id}")

        return shipment

    async def update_shipment_status(
        self,
        shipment_id: UUID,
        new_status: str,
        location: Optional[str],
        actor: Actor,
    ) -> Shipment:
        """
        Set a shipment's status directly.

        Any party on the shipment, an admin or a manufacturer may set any
        status. Exactly one location history entry is appended; ``location``
        falls back to the current location when omitted.
        """
        try:
            status = ShipmentStatus(new_status)
        except ValueError:
            raise ValidationError("status", f"'{new_status}' is not a shipment status",
                                  entity_id=str(shipment_id))

        shipment = await self._get_or_raise(Shipment, shipment_id)
        self._ensure_party(actor, shipment.from_user_id, shipment.to_user_id,
                           "update this shipment", entity_id=str(shipment.id))

        previous = shipment.status
        now = _now()
        location = (location or "").strip() or shipment.current_location

        shipment.status = status.value
        if status == ShipmentStatus.DELIVERED:
            # first delivery time wins on repeated updates
            shipment.delivered_at = shipment.delivered_at or now
        else:
            shipment.delivered_at = None
        self._append_location(shipment, location, status, now)

        await save_event_to_outbox(self.session, ShipmentStatusUpdatedEvent(
            aggregate_id=shipment.id,
            actor_id=actor.user_id,
            tracking_number=shipment.tracking_number,
            from_status=previous,
            to_status=status.value,
            location=location,
        ))

        await self._commit("Shipment", shipment.id)

        logger.info(f"Shipment {shipment.id} status {previous} -> {status.value} by {actor.user_id}")

        return shipment

    async def report_shipment_delay(
        self,
        shipment_id: UUID,
        reason: Optional[str],
        actor: Actor,
        notes: Optional[str] = None,
    ) -> Shipment:
        """Flag a shipment as delayed and append the delay record."""
        reason = _require_text("reason", reason, entity_id=str(shipment_id))

        shipment = await self._get_or_raise(Shipment, shipment_id)
        self._ensure_party(actor, shipment.from_user_id, shipment.to_user_id,
                           "report delays on this shipment", entity_id=str(shipment.id))
        if shipment.status == ShipmentStatus.DELIVERED.value:
            raise InvalidStateError(str(shipment.id), shipment.status, "an undelivered shipment")

        previous = shipment.status
        now = _now()

        shipment.status = ShipmentStatus.DELAYED.value
        shipment.delivered_at = None
        shipment.delays = [*shipment.delays, {
            "reason": reason,
            "reported_at": now.isoformat(),
            "resolved_at": None,
            "notes": notes,
        }]
        self._append_location(shipment, shipment.current_location, ShipmentStatus.DELAYED, now)

        await save_event_to_outbox(self.session, ShipmentDelayReportedEvent(
            aggregate_id=shipment.id,
            actor_id=actor.user_id,
            tracking_number=shipment.tracking_number,
            from_status=previous,
            reason=reason,
        ))

        await self._commit("Shipment", shipment.id)

        logger.info(f"Delay reported on shipment {shipment.id}: {reason}")

        return shipment

    async def resolve_shipment_delay(
        self,
        shipment_id: UUID,
        delay_index: int,
        actor: Actor,
    ) -> Shipment:
        """Fill ``resolved_at`` on an open delay. Status is left to ``update_shipment_status``."""
        shipment = await self._get_or_raise(Shipment, shipment_id)
        self._ensure_party(actor, shipment.from_user_id, shipment.to_user_id,
                           "resolve delays on this shipment", entity_id=str(shipment.id))

        if delay_index < 0 or delay_index >= len(shipment.delays):
            raise NotFoundError("ShipmentDelay", f"{shipment.id}#{delay_index}")

        delays = [dict(delay) for delay in shipment.delays]
        delay = delays[delay_index]
        if delay.get("resolved_at"):
            raise InvalidStateError(f"{shipment.id}#{delay_index}", "resolved", "an open delay")

        resolved_at = _now()
        delay["resolved_at"] = resolved_at.isoformat()
        shipment.delays = delays
        shipment.updated_at = resolved_at

        await save_event_to_outbox(self.session, ShipmentDelayResolvedEvent(
            aggregate_id=shipment.id,
            actor_id=actor.user_id,
            tracking_number=shipment.tracking_number,
            delay_index=delay_index,
            reason=delay.get("reason"),
            reported_at=delay.get("reported_at"),
            resolved_at=resolved_at,
        ))

        await self._commit("Shipment", shipment.id)

        logger.info(f"Resolved delay #{delay_index} on shipment {shipment.id}")

        return shipment

    async def get_shipment(self, shipment_id: UUID) -> Shipment:
        return await self._get_or_raise(Shipment, shipment_id)

    # Transactions

    async def create_transaction(
        self,
        product_id: UUID,
        to_user_id: str,
        actor: Actor,
        quantity: int = 1,
        from_user_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> Transaction:
        """Open an ownership transfer with a single ``pending`` note."""
        to_user_id = _require_text("to_user_id", to_user_id)
        if quantity is None or quantity < 1:
            raise ValidationError("quantity", "must be at least 1")
        from_user_id = from_user_id or actor.user_id
        self._ensure_party(actor, from_user_id, to_user_id, "open transactions for other parties")

        await self._get_or_raise(Product, product_id)

        now = _now()
        transaction = Transaction(
            id=uuid4(),
            product_id=product_id,
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            quantity=quantity,
            status=TransactionStatus.PENDING.value,
            notes=[self._note(TransactionStatus.PENDING, note or "Transaction created", actor, now)],
            created_at=now,
            updated_at=now,
        )
        self.session.add(transaction)

        await save_event_to_outbox(self.session, TransactionCreatedEvent(
            aggregate_id=transaction.id,
            actor_id=actor.user_id,
            product_id=product_id,
            status=transaction.status,
        ))

        await self.session.commit()

        logger.info(f"Created transaction {transaction.id} for product {product_id}")

        return transaction

    async def update_transaction_status(
        self,
        transaction_id: UUID,
        new_status: str,
        note: Optional[str],
        actor: Actor,
    ) -> Transaction:
        """Set a transaction's status and append exactly one audit note."""
        try:
            status = TransactionStatus(new_status)
        except ValueError:
            raise ValidationError("status", f"'{new_status}' is not a transaction status",
                                  entity_id=str(transaction_id))

        transaction = await self._get_or_raise(Transaction, transaction_id)
        self._ensure_party(actor, transaction.from_user_id, transaction.to_user_id,
                           "update this transaction", entity_id=str(transaction.id))

        previous = transaction.status
        text = (note or "").strip() or f"Status updated to {status.value}"

        transaction.status = status.value
        transaction.notes = [*transaction.notes, self._note(status, text, actor, _now())]

        await save_event_to_outbox(self.session, TransactionStatusUpdatedEvent(
            aggregate_id=transaction.id,
            actor_id=actor.user_id,
            product_id=transaction.product_id,
            from_status=previous,
            to_status=status.value,
        ))

        await self._commit("Transaction", transaction.id)

        logger.info(f"Transaction {transaction.id} status {previous} -> {status.value} by {actor.user_id}")

        return transaction

    async def get_transaction(self, transaction_id: UUID) -> Transaction:
        return await self._get_or_raise(Transaction, transaction_id)

    async def list_transactions_for_product(self, product_id: UUID) -> Sequence[Transaction]:
        result = await self.session.execute(
            select(Transaction)
            .where(Transaction.product_id == product_id)
            .order_by(Transaction.created_at.desc())
        )
        return result.scalars().all()

    # Helpers

    async def _get_or_raise(self, model, entity_id: UUID):
        result = await self.session.execute(select(model).where(model.id == entity_id))
        entity = result.scalar_one_or_none()
        if not entity:
            raise NotFoundError(model.__name__, str(entity_id))
        return entity

    async def _commit(self, entity_type: str, entity_id: UUID):
        """Commit the versioned update, turning a lost race into ConflictError."""
        try:
            await self.session.commit()
        except StaleDataError as e:
            await self.session.rollback()
            logger.warning(f"Concurrent update on {entity_type} {entity_id}, write rejected")
            raise ConflictError(entity_type, str(entity_id)) from e

    @staticmethod
    def _ensure_party(
        actor: Actor,
        from_user_id: str,
        to_user_id: str,
        action: str,
        entity_id: Optional[str] = None,
    ):
        if actor.role in PRIVILEGED_ROLES:
            return
        if actor.user_id not in (from_user_id, to_user_id):
            raise ForbiddenError(actor.role.value, action, entity_id=entity_id)

    @staticmethod
    def _timeline_entry(
        status: ProductStatus,
        location: str,
        actor: Actor,
        description: Optional[str],
        date: datetime,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        return {
            "status": status.value,
            "title": TIMELINE_TITLES[status],
            "date": date.isoformat(),
            "location": location,
            "handler": actor.reference(),
            "description": description,
            "metadata": metadata or {},
        }

    def _append_timeline(
        self,
        product: Product,
        status: ProductStatus,
        location: str,
        actor: Actor,
        description: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
        date: Optional[datetime] = None,
    ):
        # status, location and timeline change together in one versioned UPDATE
        date = date or _now()
        entry = self._timeline_entry(status, location, actor, description, date, metadata)
        product.timeline = [*product.timeline, entry]
        product.status = status.value
        product.current_location = location
        product.updated_at = date

    @staticmethod
    def _append_location(shipment: Shipment, location: str, status: ShipmentStatus, when: datetime):
        shipment.current_location = location
        shipment.location_history = [*shipment.location_history, {
            "location": location,
            "timestamp": when.isoformat(),
            "status": status.value,
        }]
        shipment.updated_at = when

    @staticmethod
    def _note(status: TransactionStatus, text: str, actor: Actor, when: datetime) -> Dict[str, Any]:
        return {
            "timestamp": when.isoformat(),
            "status": status.value,
            "text": text,
            "updated_by": actor.reference(),
        }


def timeline_of(product: Product) -> List[Dict[str, Any]]:
    """Copy of the product's timeline, oldest entry first."""
    return [dict(entry) for entry in product.timeline]
