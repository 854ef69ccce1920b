"""Multi-tenant secret broker with ring-scoped access control."""

from .broker import SecretBroker
from .config import Settings
from .errors import (
    BrokerError,
    Conflict,
    DelegationInvalid,
    Forbidden,
    NotFound,
    Unauthenticated,
    Unavailable,
)

__all__ = [
    "BrokerError",
    "Conflict",
    "DelegationInvalid",
    "Forbidden",
    "NotFound",
    "SecretBroker",
    "Settings",
    "Unauthenticated",
    "Unavailable",
]
