"""Error taxonomy shared by every broker component.

Components raise these; only ``SecretBroker`` turns them into result dicts.
``Forbidden`` and ``Unauthenticated`` are never interchangeable: an
unauthenticated caller must not learn whether a resource exists.
"""


class BrokerError(Exception):
    """Base class. ``status`` is the machine-readable kind."""

    status = "error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class NotFound(BrokerError):
    status = "not_found"


class Forbidden(BrokerError):
    status = "forbidden"


class Unauthenticated(BrokerError):
    status = "unauthenticated"


class Conflict(BrokerError):
    status = "conflict"


class Unavailable(BrokerError):
    """Storage or an external collaborator could not be reached. Retryable."""

    status = "unavailable"


class DelegationInvalid(Unauthenticated):
    """Agent credential resolved, but its sponsoring human no longer qualifies."""

    status = "delegation_invalid"
