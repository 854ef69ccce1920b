"""Ring discovery registry.

Only public metadata is ever stored here: an optional public name, a list
of capabilities and timestamps. Members, emails and secrets never leave
the ring record.
"""

import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from loguru import logger

from .errors import Conflict, NotFound
from .models import JsonRecord, iso, utcnow
from .rings import RingMembership
from .storage import StorageAdapter

REGISTRY_PREFIX = "ring-registry:"
ANONYMOUS_RING_PREFIX = "anon-"
ANONYMOUS_PRINCIPAL = "anonymous@ringbroker.local"
DEFAULT_CAPABILITIES = ["key-management", "token-management"]


@dataclass
class PublicRingInfo(JsonRecord):
    ring_id: str
    public_name: str | None = None
    capabilities: list[str] = field(default_factory=list)
    created_at: str | None = None
    last_seen: str | None = None


def is_anonymous_ring(ring_id: str | None) -> bool:
    return bool(ring_id) and ring_id.startswith(ANONYMOUS_RING_PREFIX)


class RingRegistry:
    def __init__(
        self,
        storage: StorageAdapter,
        rings: RingMembership,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._storage = storage
        self._rings = rings
        self._clock = clock

    def register(
        self,
        ring_id: str,
        public_name: str | None = None,
        capabilities: list[str] | None = None,
    ) -> PublicRingInfo:
        if not ring_id:
            raise Conflict("Ring ID is required")
        ring = self._rings.get_ring(ring_id)
        info = PublicRingInfo(
            ring_id=ring_id,
            public_name=public_name or ring.metadata.public_name,
            capabilities=list(capabilities or ring.metadata.capabilities),
            created_at=ring.created_at,
            last_seen=iso(self._clock()),
        )
        self._storage.set(REGISTRY_PREFIX + ring_id, info.to_json())
        logger.info(f"Ring {ring_id} registered for discovery")
        return info

    def get_metadata(self, ring_id: str | None) -> PublicRingInfo | None:
        if not ring_id:
            return None
        raw = self._storage.get(REGISTRY_PREFIX + ring_id)
        return PublicRingInfo.from_json(raw) if raw else None

    def update_metadata(
        self,
        ring_id: str,
        public_name: str | None = None,
        capabilities: list[str] | None = None,
    ) -> PublicRingInfo:
        """Update the safe fields and refresh ``last_seen``; registers unknown rings."""
        if self.get_metadata(ring_id) is None:
            return self.register(ring_id, public_name, capabilities)
        now = iso(self._clock())

        def fn(raw):
            if raw is None:
                raise NotFound(f"Ring {ring_id} is not registered")
            info = PublicRingInfo.from_json(raw)
            if public_name is not None:
                info.public_name = public_name
            if capabilities is not None:
                info.capabilities = list(capabilities)
            info.last_seen = now
            return info.to_json()

        return PublicRingInfo.from_json(self._storage.update(REGISTRY_PREFIX + ring_id, fn))

    def unregister(self, ring_id: str) -> bool:
        removed = self._storage.delete(REGISTRY_PREFIX + ring_id)
        if removed:
            logger.info(f"Ring {ring_id} removed from discovery")
        return removed

    def discover(self, include_anonymous: bool = True) -> dict[str, PublicRingInfo]:
        found = {}
        for key in self._storage.keys(REGISTRY_PREFIX):
            ring_id = key[len(REGISTRY_PREFIX):]
            if not include_anonymous and is_anonymous_ring(ring_id):
                continue
            info = self.get_metadata(ring_id)
            if info is not None:
                found[ring_id] = info
        return found

    def search_by_capability(self, capability: str) -> dict[str, PublicRingInfo]:
        return {
            ring_id: info
            for ring_id, info in self.discover().items()
            if capability in info.capabilities
        }

    def create_anonymous_ring(self, session_id: str | None = None):
        ring_id = f"{ANONYMOUS_RING_PREFIX}{session_id or uuid.uuid4().hex[:12]}"
        ring = self._rings.create_ring(ring_id, ANONYMOUS_PRINCIPAL, creator=ANONYMOUS_PRINCIPAL)
        self.register(ring_id, public_name="Anonymous", capabilities=DEFAULT_CAPABILITIES)
        return ring

    is_anonymous_ring = staticmethod(is_anonymous_ring)
