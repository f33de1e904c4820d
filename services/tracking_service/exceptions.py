"""
Typed errors raised by the lifecycle engine.

Every error carries a machine-readable ``code`` and the structured fields a
caller needs to render a message. The route layer maps each class to an
HTTP status; nothing here is fatal beyond the single request.

    LifecycleError
    +-- NotFoundError            NOT_FOUND
    +-- ValidationError          VALIDATION_ERROR
    +-- ForbiddenError           FORBIDDEN
    +-- InvalidTransitionError   INVALID_TRANSITION
    +-- InvalidStateError        INVALID_STATE
    +-- ConflictError            CONFLICT
"""
from typing import Any, Dict, Optional


class LifecycleError(Exception):
    """Base exception for lifecycle engine errors."""

    code: str = "LIFECYCLE_ERROR"

    def __init__(self, message: str, entity_id: Optional[str] = None):
        self.message = message
        self.entity_id = entity_id
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        data = {"code": self.code, "message": self.message}
        if self.entity_id is not None:
            data["entity_id"] = self.entity_id
        return data


class NotFoundError(LifecycleError):
    """Entity with the given id does not exist."""

    code: str = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        super().__init__(f"{entity_type} {entity_id} not found", entity_id=entity_id)


class ValidationError(LifecycleError):
    """A required input field is missing or malformed."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, field: str, reason: str, entity_id: Optional[str] = None):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid '{field}': {reason}", entity_id=entity_id)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["field"] = self.field
        return data


class ForbiddenError(LifecycleError):
    """The actor's role may not perform this operation at all."""

    code: str = "FORBIDDEN"

    def __init__(self, role: str, action: str, entity_id: Optional[str] = None):
        self.role = role
        self.action = action
        super().__init__(f"Role '{role}' is not allowed to {action}", entity_id=entity_id)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(role=self.role, action=self.action)
        return data


class InvalidTransitionError(LifecycleError):
    """The transition table has no edge for this role and state pair."""

    code: str = "INVALID_TRANSITION"

    def __init__(self, entity_id: str, role: str, from_status: str, to_status: str):
        self.role = role
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Role '{role}' cannot move {entity_id} from '{from_status}' to '{to_status}'",
            entity_id=entity_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(role=self.role, from_status=self.from_status, to_status=self.to_status)
        return data


class InvalidStateError(LifecycleError):
    """The entity is not in a state that allows the operation."""

    code: str = "INVALID_STATE"

    def __init__(self, entity_id: str, current_status: str, expected: str):
        self.current_status = current_status
        self.expected = expected
        super().__init__(
            f"{entity_id} is '{current_status}', expected {expected}",
            entity_id=entity_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(current_status=self.current_status, expected=self.expected)
        return data


class ConflictError(LifecycleError):
    """A concurrent write changed the entity between read and update."""

    code: str = "CONFLICT"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        super().__init__(
            f"{entity_type} {entity_id} was modified by another request",
            entity_id=entity_id,
        )
