"""Per-key visibility ledger.

Ring membership authorizes ring access, not key access. A newly registered
key is visible only to its creator; others read it once the creator grants
them access, or once the creator shares it with the whole ring. Keys whose
value predates visibility tracking (a value with no metadata record) are
reported with the explicit ``legacy-shared`` mode and stay ring-visible.
"""

from collections.abc import Callable
from datetime import datetime

from loguru import logger

from .errors import Conflict, Forbidden, NotFound
from .models import (
    OWNING_ROLES,
    KeyVisibility,
    PendingRequest,
    VisibilityMode,
    iso,
    normalize_principal,
    utcnow,
)
from .rings import RingMembership
from .storage import StorageAdapter, key_segment, list_add, list_remove, load_list

# Modes readable by every ring member
RING_VISIBLE_MODES = {VisibilityMode.LEGACY_SHARED.value, VisibilityMode.RING_SHARED.value}


def secret_key(ring_id: str, key_name: str) -> str:
    return f"ring:{key_segment(ring_id, 'Ring id')}:secret:{key_segment(key_name, 'Key name')}"


def meta_key(ring_id: str, key_name: str) -> str:
    return f"{secret_key(ring_id, key_name)}:meta"


def keys_list_key(ring_id: str) -> str:
    return f"ring:{key_segment(ring_id, 'Ring id')}:keys:list"


class KeyVisibilityLedger:
    def __init__(
        self,
        storage: StorageAdapter,
        rings: RingMembership,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._storage = storage
        self._rings = rings
        self._clock = clock

    def lookup(self, ring_id: str, key_name: str) -> KeyVisibility | None:
        """Visibility record for a key, or None if the key does not exist."""
        raw = self._storage.get(meta_key(ring_id, key_name))
        if raw:
            return KeyVisibility.from_json(raw)
        if self._storage.get(secret_key(ring_id, key_name)) is not None:
            return KeyVisibility(
                ring_id=ring_id,
                key_name=key_name,
                mode=VisibilityMode.LEGACY_SHARED.value,
            )
        return None

    def _require(self, ring_id: str, key_name: str) -> KeyVisibility:
        record = self.lookup(ring_id, key_name)
        if record is None:
            raise NotFound(f"Key {key_name} not found in ring {ring_id}")
        return record

    def _require_member(self, ring_id: str, principal: str | None) -> str:
        principal = normalize_principal(principal)
        self._rings.get_ring(ring_id)
        if not self._rings.is_member(ring_id, principal):
            raise Forbidden(f"{principal} is not a member of ring {ring_id}")
        return principal

    def _require_creator(self, record: KeyVisibility, principal: str | None, action: str) -> str:
        principal = normalize_principal(principal)
        if record.created_by is None or record.created_by != principal:
            raise Forbidden(f"Only the creator of {record.key_name} can {action}")
        return principal

    def _mutate(self, ring_id: str, key_name: str, fn: Callable[[KeyVisibility], None]) -> KeyVisibility:
        def update(raw):
            if raw is None:
                raise NotFound(f"Key {key_name} has no visibility record in ring {ring_id}")
            record = KeyVisibility.from_json(raw)
            fn(record)
            return record.to_json()

        return KeyVisibility.from_json(self._storage.update(meta_key(ring_id, key_name), update))

    # ── Registration ───────────────────────────────────────────────

    def register_key(
        self,
        ring_id: str,
        key_name: str,
        creator: str,
        shared: bool = False,
        labels: dict | None = None,
    ) -> KeyVisibility:
        creator = self._require_member(ring_id, creator)
        record = KeyVisibility(
            ring_id=ring_id,
            key_name=key_name,
            mode=(VisibilityMode.RING_SHARED if shared else VisibilityMode.CREATOR_PRIVATE).value,
            created_by=creator,
            created_at=iso(self._clock()),
            labels=dict(labels or {}),
        )
        if not self._storage.add(meta_key(ring_id, key_name), record.to_json()):
            raise Conflict(f"Key {key_name} is already registered in ring {ring_id}")
        list_add(self._storage, keys_list_key(ring_id), key_name)
        logger.info(f"Key {key_name} registered in ring {ring_id} by {creator} ({record.mode})")
        return record

    def forget_key(self, ring_id: str, key_name: str) -> None:
        self._storage.delete(meta_key(ring_id, key_name))
        list_remove(self._storage, keys_list_key(ring_id), key_name)

    def set_labels(self, ring_id: str, key_name: str, labels: dict) -> KeyVisibility:
        def fn(record):
            record.labels.update(labels)

        return self._mutate(ring_id, key_name, fn)

    # ── Access checks ──────────────────────────────────────────────

    def can_view(self, principal: str | None, ring_id: str, key_name: str) -> bool:
        principal = normalize_principal(principal)
        if principal is None or not self._rings.is_member(ring_id, principal):
            return False
        record = self.lookup(ring_id, key_name)
        if record is None:
            return False
        if record.created_by == principal:
            return True
        if record.mode in RING_VISIBLE_MODES:
            return True
        return principal in record.shared_with

    def visible_keys(self, ring_id: str, principal: str | None) -> list[str]:
        return [
            name
            for name in load_list(self._storage, keys_list_key(ring_id))
            if self.can_view(principal, ring_id, name)
        ]

    def describe(self, ring_id: str, key_name: str, principal: str | None) -> KeyVisibility:
        """Visibility record as seen by ``principal``.

        Only the creator sees who else was granted access and who is waiting.
        """
        principal = self._require_member(ring_id, principal)
        record = self._require(ring_id, key_name)
        if record.created_by != principal:
            record.shared_with = []
            record.pending_requests = {}
        return record

    # ── Request / grant workflow ───────────────────────────────────

    def request_access(self, ring_id: str, key_name: str, requester: str, reason: str) -> PendingRequest:
        requester = self._require_member(ring_id, requester)
        record = self._require(ring_id, key_name)
        if self.can_view(requester, ring_id, key_name):
            raise Conflict(f"{requester} can already view {key_name}")
        if record.created_by is None:
            raise Conflict(f"Key {key_name} has no creator to request access from")

        request = PendingRequest(
            ring_id=ring_id,
            key_name=key_name,
            requester=requester,
            reason=reason or "",
            requested_at=iso(self._clock()),
        )

        def fn(record):
            # One entry per requester; a repeat replaces the reason
            record.pending_requests[requester] = request

        self._mutate(ring_id, key_name, fn)
        logger.info(f"{requester} requested access to {key_name} in ring {ring_id}")
        return request

    def pending_requests(self, ring_id: str, key_name: str, principal: str) -> list[PendingRequest]:
        record = self._require(ring_id, key_name)
        self._require_creator(record, principal, "see pending requests")
        return sorted(record.pending_requests.values(), key=lambda r: r.requested_at)

    def grant_access(self, ring_id: str, key_name: str, grantee: str, grantor: str) -> bool:
        grantee = normalize_principal(grantee)
        record = self._require(ring_id, key_name)
        grantor = self._require_creator(record, grantor, "grant access")
        if not self._rings.is_member(ring_id, grantee):
            raise Conflict(f"{grantee} is not a member of ring {ring_id}")

        def fn(record):
            if record.created_by != grantor:
                raise Forbidden(f"Only the creator of {key_name} can grant access")
            if grantee != record.created_by and grantee not in record.shared_with:
                record.shared_with.append(grantee)
            record.pending_requests.pop(grantee, None)

        self._mutate(ring_id, key_name, fn)
        logger.info(f"{grantor} granted {grantee} access to {key_name} in ring {ring_id}")
        return True

    def deny_request(self, ring_id: str, key_name: str, requester: str, grantor: str) -> bool:
        requester = normalize_principal(requester)
        record = self._require(ring_id, key_name)
        self._require_creator(record, grantor, "deny requests")
        if requester not in record.pending_requests:
            return False

        def fn(record):
            record.pending_requests.pop(requester, None)

        self._mutate(ring_id, key_name, fn)
        return True

    def revoke_access(self, ring_id: str, key_name: str, grantee: str, grantor: str) -> bool:
        grantee = normalize_principal(grantee)
        record = self._require(ring_id, key_name)
        grantor = self._require_creator(record, grantor, "revoke access")
        if grantee not in record.shared_with:
            return False

        def fn(record):
            if grantee in record.shared_with:
                record.shared_with.remove(grantee)

        self._mutate(ring_id, key_name, fn)
        logger.info(f"{grantor} revoked {grantee}'s access to {key_name} in ring {ring_id}")
        return True

    def share_with_ring(self, ring_id: str, key_name: str, actor: str, shared: bool = True) -> KeyVisibility:
        """Creator toggles a key between creator-private and ring-shared."""
        record = self._require(ring_id, key_name)
        actor = self._require_creator(record, actor, "change its visibility")
        mode = (VisibilityMode.RING_SHARED if shared else VisibilityMode.CREATOR_PRIVATE).value

        def fn(record):
            record.mode = mode
            if shared:
                record.pending_requests = {}

        result = self._mutate(ring_id, key_name, fn)
        logger.info(f"{actor} set {key_name} in ring {ring_id} to {mode}")
        return result

    def can_manage(self, principal: str | None, ring_id: str, key_name: str) -> bool:
        """Creator of the key; for legacy keys, an owner or architect of the ring."""
        principal = normalize_principal(principal)
        record = self.lookup(ring_id, key_name)
        if principal is None or record is None:
            return False
        if record.created_by is not None:
            return record.created_by == principal
        return bool(OWNING_ROLES & set(self._rings.member_roles(ring_id, principal)))
