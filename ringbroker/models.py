"""Records persisted through the storage adapter.

Each record is a dataclass that round-trips through a JSON string, which is
all the storage adapter ever sees. Timestamps are ISO-8601 UTC strings.
"""

import json
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum

from .errors import Conflict


class Role(str, Enum):
    OWNER = "owner"
    ARCHITECT = "architect"
    MEMBER = "member"


ALL_ROLES = [Role.OWNER.value, Role.ARCHITECT.value, Role.MEMBER.value]
OWNING_ROLES = {Role.OWNER.value, Role.ARCHITECT.value}


class PersonaTier(str, Enum):
    ANONYMOUS = "anonymous"
    VERIFIED_HUMAN = "verified-human"
    DELEGATED_AGENT = "delegated-agent"


class EntityType(str, Enum):
    PERSON = "person"
    AGENT = "agent"


class VisibilityMode(str, Enum):
    # Keys written before creators were tracked; readable by every member.
    LEGACY_SHARED = "legacy-shared"
    CREATOR_PRIVATE = "creator-private"
    RING_SHARED = "ring-shared"


class CredentialKind(str, Enum):
    BEARER = "bearer"
    DEVICE = "device"
    ELEVATION = "elevation"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso(dt: datetime) -> str:
    return dt.isoformat()


def parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(value)


def normalize_principal(principal: str | None) -> str | None:
    """Identifiers are compared case-insensitively, without surrounding space.

    Raises ``Conflict`` for identifiers containing ``:``, which separates
    the segments of every storage key.
    """
    if principal is None:
        return None
    principal = principal.strip().lower()
    if ":" in principal:
        raise Conflict(f"Principal must not contain ':': {principal!r}")
    return principal or None



class JsonRecord:
    """Mixin: ``to_json`` / ``from_json`` for flat dataclasses."""

    def to_dict(self) -> dict:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_dict(cls, data: dict):
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def from_json(cls, raw: str):
        return cls.from_dict(json.loads(raw))


# ── Rings ──────────────────────────────────────────────────────────


@dataclass
class RingMetadata(JsonRecord):
    label: str | None = None
    tags: list[str] = field(default_factory=list)
    public_name: str | None = None
    capabilities: list[str] = field(default_factory=list)
    created_at: str | None = None
    last_seen: str | None = None


@dataclass
class MemberEntry(JsonRecord):
    roles: list[str]
    added_at: str
    updated_at: str | None = None


@dataclass
class Ring(JsonRecord):
    ring_id: str
    created_by: str
    created_at: str
    updated_at: str
    members: dict[str, MemberEntry] = field(default_factory=dict)
    metadata: RingMetadata = field(default_factory=RingMetadata)
    anchored_by: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "Ring":
        data = dict(data)
        data["members"] = {
            p: MemberEntry.from_dict(m) for p, m in data.get("members", {}).items()
        }
        data["metadata"] = RingMetadata.from_dict(data.get("metadata") or {})
        return super().from_dict(data)

    def roles_of(self, principal: str) -> list[str]:
        entry = self.members.get(principal)
        return list(entry.roles) if entry else []

    def role_map(self) -> dict[str, list[str]]:
        return {p: list(m.roles) for p, m in self.members.items()}


# ── Key visibility ─────────────────────────────────────────────────


@dataclass
class PendingRequest(JsonRecord):
    ring_id: str
    key_name: str
    requester: str
    reason: str
    requested_at: str


@dataclass
class KeyVisibility(JsonRecord):
    ring_id: str
    key_name: str
    mode: str
    created_by: str | None = None
    created_at: str | None = None
    shared_with: list[str] = field(default_factory=list)
    pending_requests: dict[str, PendingRequest] = field(default_factory=dict)
    labels: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "KeyVisibility":
        data = dict(data)
        data["pending_requests"] = {
            p: PendingRequest.from_dict(r)
            for p, r in data.get("pending_requests", {}).items()
        }
        return super().from_dict(data)


@dataclass
class StoredSecret(JsonRecord):
    """Encrypted ring-level secret value (hex-encoded fields)."""

    ring_id: str
    key_name: str
    ciphertext: str
    iv: str
    tag: str
    salt: str
    created_at: str
    updated_at: str
    labels: dict = field(default_factory=dict)


# ── Privacy vault ──────────────────────────────────────────────────


@dataclass
class VaultEntry(JsonRecord):
    ring_id: str
    key_name: str
    owner: str
    vault_secret_name: str
    ciphertext: str
    iv: str
    tag: str
    salt: str
    created_at: str
    updated_at: str


@dataclass
class VaultReceipt:
    ring_id: str
    key_name: str
    owner: str
    vault_secret_name: str
    action: str  # "created" or "updated"
    updated_at: str


# ── Principals ─────────────────────────────────────────────────────


@dataclass
class PrincipalAccount(JsonRecord):
    identifier: str
    entity_type: str = EntityType.PERSON.value
    verified: bool = False
    verification_method: str | None = None
    verification_id: str | None = None
    verified_at: str | None = None
    delegated_by: str | None = None
    delegated_at: str | None = None
    delegation_revoked: bool = False
    delegated_agents: list[str] = field(default_factory=list)
    capabilities: list[str] = field(default_factory=list)
    roles: list[str] = field(default_factory=list)
    anchored_rings: list[str] = field(default_factory=list)
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def is_agent(self) -> bool:
        return self.entity_type == EntityType.AGENT.value


# ── Credentials ────────────────────────────────────────────────────


@dataclass
class BearerToken(JsonRecord):
    token_id: str
    principal: str
    client_id: str
    client_type: str
    issued_at: str
    expires_at: str
    revoked: bool = False
    permissions: list[str] = field(default_factory=lambda: ["read", "write"])


@dataclass
class DeviceToken(JsonRecord):
    device_id: str
    principal: str
    fingerprint_hash: str
    registered_at: str
    expires_at: str
    last_access_at: str
    second_factor_verified: bool = True
    revoked: bool = False
    revoked_at: str | None = None


@dataclass
class DeviceChallenge(JsonRecord):
    challenge_id: str
    principal: str
    code_hash: str
    fingerprint_hash: str
    created_at: str
    expires_at: str
    attempts: int = 0
    delivery_method: str = "manual"


@dataclass
class ElevationCode(JsonRecord):
    code_hash: str
    created_at: str
    expires_at: str
    single_use: bool = True
