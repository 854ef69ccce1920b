"""Ring membership and roles.

A ring is a trust group. Membership authorizes access to the ring, never
blanket access to every key in it (see ``visibility``). Roles are limited
to owner, architect and member; owner and architect may only be held by
the ring's creator or by the first verified identity anchored to the ring.
"""

import uuid
from collections.abc import Callable
from datetime import datetime

from loguru import logger

from .errors import Conflict, Forbidden, NotFound
from .models import (
    ALL_ROLES,
    OWNING_ROLES,
    MemberEntry,
    PersonaTier,
    Ring,
    RingMetadata,
    iso,
    normalize_principal,
    utcnow,
)
from .persona import PersonaAuthority
from .storage import (
    StorageAdapter,
    key_segment,
    list_add,
    list_remove,
    load_list,
    purge_prefix,
)

RINGS_INDEX = "rings:index"
MAX_ID_ATTEMPTS = 5


def validate_roles(roles) -> list[str]:
    """Normalize a role list; unknown names fail closed with Conflict."""
    if isinstance(roles, str):
        roles = [roles]
    if not roles:
        raise Conflict("At least one role is required")
    names = {str(r).strip().lower() for r in roles}
    unknown = names - set(ALL_ROLES)
    if unknown:
        raise Conflict(f"Invalid role(s): {', '.join(sorted(unknown))}. Valid roles: {', '.join(ALL_ROLES)}")
    return [r for r in ALL_ROLES if r in names]


def _has_owning_member(role_map: dict[str, list[str]]) -> bool:
    return any(OWNING_ROLES & set(roles) for roles in role_map.values())


class RingMembership:
    def __init__(
        self,
        storage: StorageAdapter,
        persona: PersonaAuthority,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._storage = storage
        self._persona = persona
        self._clock = clock

    @staticmethod
    def _key(ring_id: str) -> str:
        return f"ring:{key_segment(ring_id, 'Ring id')}"

    @staticmethod
    def _principal_key(principal: str) -> str:
        return f"principal-rings:{principal}"

    # ── Lookups ────────────────────────────────────────────────────

    def find_ring(self, ring_id: str | None) -> Ring | None:
        if not ring_id:
            return None
        raw = self._storage.get(self._key(ring_id))
        return Ring.from_json(raw) if raw else None

    def get_ring(self, ring_id: str) -> Ring:
        ring = self.find_ring(ring_id)
        if ring is None:
            raise NotFound(f"Ring {ring_id} not found")
        return ring

    def list_ring_ids(self) -> list[str]:
        return load_list(self._storage, RINGS_INDEX)

    def member_roles(self, ring_id: str, principal: str | None) -> list[str]:
        ring = self.find_ring(ring_id)
        principal = normalize_principal(principal)
        if ring is None or principal is None:
            return []
        return ring.roles_of(principal)

    def is_member(self, ring_id: str, principal: str | None) -> bool:
        return bool(self.member_roles(ring_id, principal))

    def rings_for(self, principal: str | None) -> list[str]:
        principal = normalize_principal(principal)
        if principal is None:
            return []
        return load_list(self._storage, self._principal_key(principal))

    def ring_for_principal(self, principal: str | None) -> str | None:
        rings = self.rings_for(principal)
        return rings[0] if rings else None

    def can_own(self, principal: str | None, ring_id: str) -> bool:
        principal = normalize_principal(principal)
        ring = self.find_ring(ring_id)
        if principal is None or ring is None:
            return False
        if ring.created_by == principal:
            return True
        account = self._persona.get_account(principal)
        return account is not None and ring_id in account.anchored_rings and ring.anchored_by == principal

    # ── Mutations ──────────────────────────────────────────────────

    def create_ring(
        self,
        ring_id: str | None,
        first_member: str,
        initial_roles: dict[str, list[str]] | None = None,
        creator: str | None = None,
        metadata: RingMetadata | dict | None = None,
    ) -> Ring:
        first_member = normalize_principal(first_member)
        if first_member is None:
            raise Conflict("First member is required")
        creator = normalize_principal(creator) or first_member

        roles = {
            normalize_principal(p): validate_roles(r)
            for p, r in (initial_roles or {}).items()
        }
        if None in roles:
            raise Conflict("Every member needs a principal")
        if first_member not in roles:
            roles[first_member] = list(ALL_ROLES) if first_member == creator else ["member"]

        for principal, granted in roles.items():
            if OWNING_ROLES & set(granted) and principal != creator:
                raise Forbidden(f"{principal} cannot hold owner/architect on a ring they did not create")
        if not _has_owning_member(roles):
            raise Conflict("Ring must have at least one owner or architect")

        if isinstance(metadata, dict):
            metadata = RingMetadata.from_dict(metadata)
        metadata = metadata or RingMetadata()
        now = iso(self._clock())
        metadata.created_at = metadata.created_at or now
        metadata.last_seen = now

        def build(rid: str) -> Ring:
            return Ring(
                ring_id=rid,
                created_by=creator,
                created_at=now,
                updated_at=now,
                members={p: MemberEntry(roles=r, added_at=now) for p, r in roles.items()},
                metadata=metadata,
            )

        if ring_id:
            ring = build(ring_id)
            if not self._storage.add(self._key(ring_id), ring.to_json()):
                raise Conflict(f"Ring {ring_id} already exists")
        else:
            for _ in range(MAX_ID_ATTEMPTS):
                ring = build(f"ring-{uuid.uuid4().hex[:12]}")
                if self._storage.add(self._key(ring.ring_id), ring.to_json()):
                    break
            else:
                raise Conflict("Could not allocate a unique ring id")

        list_add(self._storage, RINGS_INDEX, ring.ring_id)
        for principal in ring.members:
            list_add(self._storage, self._principal_key(principal), ring.ring_id)
        logger.info(f"Ring {ring.ring_id} created by {creator} with {len(ring.members)} member(s)")
        return ring

    def _require_admin(self, ring: Ring, actor: str | None) -> str:
        actor = normalize_principal(actor)
        if actor is None or not OWNING_ROLES & set(ring.roles_of(actor)):
            raise Forbidden(f"Only owners or architects of {ring.ring_id} can change membership")
        return actor

    def _check_owning_grants(self, ring_id: str, role_map: dict[str, list[str]], current: Ring) -> None:
        for principal, roles in role_map.items():
            already = OWNING_ROLES & set(current.roles_of(principal))
            wanted = OWNING_ROLES & set(roles)
            if wanted - already and not self.can_own(principal, ring_id):
                raise Forbidden(f"{principal} cannot hold owner/architect on ring {ring_id}")

    def _mutate(self, ring_id: str, fn: Callable[[Ring], None]) -> Ring:
        now = iso(self._clock())

        def update(raw):
            if raw is None:
                raise NotFound(f"Ring {ring_id} not found")
            ring = Ring.from_json(raw)
            fn(ring)
            ring.updated_at = now
            return ring.to_json()

        return Ring.from_json(self._storage.update(self._key(ring_id), update))

    def add_member(self, ring_id: str, principal: str, roles=None, *, actor: str) -> Ring:
        """Add ``principal`` (or replace its roles). Idempotent."""
        principal = normalize_principal(principal)
        if principal is None:
            raise Conflict("Principal is required")
        roles = validate_roles(roles or ["member"])
        current = self.get_ring(ring_id)
        self._require_admin(current, actor)
        self._check_owning_grants(ring_id, {principal: roles}, current)
        now = iso(self._clock())

        def fn(ring):
            self._require_admin(ring, actor)
            entry = ring.members.get(principal)
            ring.members[principal] = MemberEntry(
                roles=roles,
                added_at=entry.added_at if entry else now,
                updated_at=now if entry else None,
            )
            if not _has_owning_member(ring.role_map()):
                raise Conflict("Ring must keep at least one owner or architect")

        ring = self._mutate(ring_id, fn)
        list_add(self._storage, self._principal_key(principal), ring_id)
        logger.info(f"{actor} added {principal} to ring {ring_id} as {roles}")
        return ring

    def remove_member(self, ring_id: str, principal: str, *, actor: str) -> Ring:
        principal = normalize_principal(principal)
        actor = normalize_principal(actor)

        def fn(ring):
            if actor != principal:
                self._require_admin(ring, actor)
            if principal not in ring.members:
                raise NotFound(f"{principal} is not a member of ring {ring_id}")
            if principal == ring.created_by:
                raise Conflict("The ring creator cannot be removed")
            del ring.members[principal]
            if not _has_owning_member(ring.role_map()):
                raise Conflict("Removing this member would leave no owner or architect")

        ring = self._mutate(ring_id, fn)
        list_remove(self._storage, self._principal_key(principal), ring_id)
        logger.info(f"{actor} removed {principal} from ring {ring_id}")
        return ring

    def set_roles(self, ring_id: str, role_map: dict[str, list[str]], *, actor: str) -> Ring:
        """Replace the ring's whole membership with ``role_map``.

        The creator is always retained with its current roles when omitted.
        """
        role_map = {normalize_principal(p): validate_roles(r) for p, r in role_map.items()}
        if None in role_map:
            raise Conflict("Every member needs a principal")
        current = self.get_ring(ring_id)
        self._require_admin(current, actor)
        self._check_owning_grants(ring_id, role_map, current)
        now = iso(self._clock())
        before = set(current.members)

        def fn(ring):
            self._require_admin(ring, actor)
            updated = dict(role_map)
            if ring.created_by not in updated:
                updated[ring.created_by] = ring.roles_of(ring.created_by) or ["member"]
            if not _has_owning_member(updated):
                raise Conflict("Ring must have at least one owner or architect")
            ring.members = {
                p: MemberEntry(
                    roles=r,
                    added_at=ring.members[p].added_at if p in ring.members else now,
                    updated_at=now,
                )
                for p, r in updated.items()
            }

        ring = self._mutate(ring_id, fn)
        after = set(ring.members)
        for principal in after - before:
            list_add(self._storage, self._principal_key(principal), ring_id)
        for principal in before - after:
            list_remove(self._storage, self._principal_key(principal), ring_id)
        logger.info(f"{actor} set roles on ring {ring_id} for {len(after)} member(s)")
        return ring

    def anchor_identity(self, ring_id: str, principal: str) -> Ring:
        """Record ``principal`` as the ring's first verified identity."""
        principal = normalize_principal(principal)
        if self._persona.classify(principal) != PersonaTier.VERIFIED_HUMAN:
            raise Forbidden("Only verified humans can anchor a ring")

        def fn(ring):
            if principal not in ring.members:
                raise Forbidden(f"{principal} is not a member of ring {ring_id}")
            if ring.anchored_by not in (None, principal):
                raise Conflict(f"Ring {ring_id} is already anchored")
            ring.anchored_by = principal

        ring = self._mutate(ring_id, fn)
        self._persona.record_anchor(principal, ring_id)
        logger.info(f"Ring {ring_id} anchored to verified identity {principal}")
        return ring

    def delete_ring(self, ring_id: str, *, actor: str) -> bool:
        """Delete the ring along with every key, visibility record and vault entry in it."""
        ring = self.get_ring(ring_id)
        if normalize_principal(actor) != ring.created_by:
            raise Forbidden("Only the ring creator can delete a ring")
        # Purge while the id is still claimed so a recreated ring starts empty
        purged = purge_prefix(self._storage, f"{self._key(ring_id)}:")
        purged += purge_prefix(self._storage, f"vault:{self._key(ring_id)}:")
        self._storage.delete(self._key(ring_id))
        list_remove(self._storage, RINGS_INDEX, ring_id)
        for principal in ring.members:
            list_remove(self._storage, self._principal_key(principal), ring_id)
        logger.info(f"Ring {ring_id} deleted by {actor} ({purged} stored record(s) purged)")
        return True

