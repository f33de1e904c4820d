"""
Bearer credential decoding.

Tokens are issued and refreshed by the auth service; this module only
verifies them and resolves the acting party as an ``Actor``.
"""
import logging
from enum import Enum
from typing import Any, Dict, Optional

import jwt
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class Role(str, Enum):
    """Roles carried in the ``role`` claim."""
    MANUFACTURER = "manufacturer"
    SUPPLIER = "supplier"
    QUALITY_INSPECTOR = "quality-inspector"
    DISTRIBUTOR = "distributor"
    ADMIN = "admin"
    CUSTOMER = "customer"


class Actor(BaseModel):
    """Authenticated party performing a request."""
    user_id: str
    role: Role
    name: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.user_id

    def reference(self) -> Dict[str, str]:
        """Resolved ``{id, name}`` reference stored on timelines and notes."""
        return {"id": self.user_id, "name": self.display_name}


class InvalidCredentialsError(Exception):
    """Raised when a bearer token cannot be verified or lacks required claims."""


def decode_actor(token: str, secret_key: str, algorithm: str = "HS256") -> Actor:
    """
    Verify a bearer token and build the actor from its claims.

    Args:
        token: Encoded JWT
        secret_key: Shared signing secret
        algorithm: Signing algorithm

    Returns:
        The actor named by ``sub``/``role``/``name``

    Raises:
        InvalidCredentialsError: bad signature, expired token, or missing claims
    """
    try:
        claims: Dict[str, Any] = jwt.decode(token, secret_key, algorithms=[algorithm])
    except jwt.PyJWTError as e:
        logger.warning(f"Rejected bearer token: {str(e)}")
        raise InvalidCredentialsError(str(e)) from e

    user_id = claims.get("sub")
    role = claims.get("role")
    if not user_id or not role:
        raise InvalidCredentialsError("token is missing 'sub' or 'role'")

    try:
        role = Role(role)
    except ValueError as e:
        raise InvalidCredentialsError(f"unknown role '{role}'") from e

    return Actor(
        user_id=str(user_id),
        role=role,
        name=claims.get("name") or claims.get("username"),
    )
