"""
Product lifecycle rules.

The transition table below is the only place that decides which role may
move a product between which states. The engine and the tests both read it.

    manufactured -> quality-check -> in-supply -> in-distribution -> delivered

``delayed`` can be entered from any in-progress state and only returns to
the state the product was in before the delay. No database access here.
"""
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional

from supplychain_shared.auth import Role

from .models import ProductStatus

INITIAL_STATE = ProductStatus.MANUFACTURED
TERMINAL_STATES = frozenset({ProductStatus.DELIVERED})
IN_PROGRESS_STATES = frozenset({
    ProductStatus.MANUFACTURED,
    ProductStatus.QUALITY_CHECK,
    ProductStatus.IN_SUPPLY,
    ProductStatus.IN_DISTRIBUTION,
})

# Happy-path edges per role
_ROLE_EDGES: Dict[Role, Dict[ProductStatus, FrozenSet[ProductStatus]]] = {
    Role.MANUFACTURER: {},
    Role.SUPPLIER: {
        ProductStatus.MANUFACTURED: frozenset({ProductStatus.IN_SUPPLY}),
        ProductStatus.QUALITY_CHECK: frozenset({ProductStatus.IN_SUPPLY}),
    },
    Role.QUALITY_INSPECTOR: {
        ProductStatus.MANUFACTURED: frozenset({ProductStatus.QUALITY_CHECK}),
        ProductStatus.IN_SUPPLY: frozenset({ProductStatus.QUALITY_CHECK}),
        ProductStatus.IN_DISTRIBUTION: frozenset({ProductStatus.QUALITY_CHECK}),
    },
    Role.DISTRIBUTOR: {
        ProductStatus.IN_SUPPLY: frozenset({ProductStatus.IN_DISTRIBUTION}),
        ProductStatus.IN_DISTRIBUTION: frozenset({ProductStatus.DELIVERED}),
    },
    Role.CUSTOMER: {},
}


def _with_delay_edges(
    edges: Mapping[ProductStatus, FrozenSet[ProductStatus]],
) -> Dict[ProductStatus, FrozenSet[ProductStatus]]:
    # whoever can move a product on from a state can also flag it delayed there
    return {
        source: targets | {ProductStatus.DELAYED} if source in IN_PROGRESS_STATES else targets
        for source, targets in edges.items()
    }


def _union(tables: Iterable[Mapping[ProductStatus, FrozenSet[ProductStatus]]]):
    merged: Dict[ProductStatus, FrozenSet[ProductStatus]] = {}
    for table in tables:
        for source, targets in table.items():
            merged[source] = merged.get(source, frozenset()) | targets
    return merged


TRANSITIONS: Dict[Role, Dict[ProductStatus, FrozenSet[ProductStatus]]] = {
    role: _with_delay_edges(edges) for role, edges in _ROLE_EDGES.items()
}
TRANSITIONS[Role.ADMIN] = _union(TRANSITIONS.values())

QUALITY_CHECK_ROLES = frozenset({Role.QUALITY_INSPECTOR, Role.ADMIN})
# manufactured products are awaiting their first inspection
QUALITY_CHECK_STATES = frozenset({ProductStatus.MANUFACTURED, ProductStatus.QUALITY_CHECK})
PRODUCT_CREATOR_ROLES = frozenset({Role.MANUFACTURER, Role.ADMIN})

TIMELINE_TITLES = {
    ProductStatus.MANUFACTURED: "Product Manufactured",
    ProductStatus.QUALITY_CHECK: "Quality Check",
    ProductStatus.IN_SUPPLY: "In Supply",
    ProductStatus.IN_DISTRIBUTION: "In Distribution",
    ProductStatus.DELIVERED: "Delivered",
    ProductStatus.DELAYED: "Delayed",
}


def parse_status(value: str) -> Optional[ProductStatus]:
    """Map a raw status string to the enum, or None if it is not a lifecycle state."""
    try:
        return ProductStatus(value)
    except ValueError:
        return None


def has_lifecycle_edges(role: Role) -> bool:
    """True if the role may perform at least one transition anywhere."""
    return any(TRANSITIONS.get(role, {}).values())


def state_before_delay(timeline: List[dict]) -> Optional[ProductStatus]:
    """Status of the most recent timeline entry that is not ``delayed``."""
    for entry in reversed(timeline):
        status = parse_status(entry.get("status", ""))
        if status is not None and status != ProductStatus.DELAYED:
            return status
    return None


def allowed_targets(
    role: Role,
    current: ProductStatus,
    resume_status: Optional[ProductStatus] = None,
) -> FrozenSet[ProductStatus]:
    """
    Target states the role may move a product to from ``current``.

    ``resume_status`` is the pre-delay state and only matters when
    ``current`` is ``delayed``: resuming is allowed for roles that could
    have raised the delay from that state.
    """
    if current in TERMINAL_STATES:
        return frozenset()

    edges = TRANSITIONS.get(role, {})
    if current == ProductStatus.DELAYED:
        if resume_status is not None and ProductStatus.DELAYED in edges.get(resume_status, ()):
            return frozenset({resume_status})
        return frozenset()

    return edges.get(current, frozenset())


def can_transition(
    role: Role,
    current: ProductStatus,
    target: ProductStatus,
    resume_status: Optional[ProductStatus] = None,
) -> bool:
    """Definitive transition check."""
    if target == INITIAL_STATE:
        return False
    return target in allowed_targets(role, current, resume_status)
