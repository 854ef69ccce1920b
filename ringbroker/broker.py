"""SecretBroker: the request-level facade over the broker components.

Every credentialed call resolves the presented credential first, so an
unauthenticated caller learns nothing about rings or keys. Components
raise the ``errors`` taxonomy; this module is the only place where those
exceptions become ``{"success": False, "status": ..., "error": ...}``.
"""

from collections.abc import Awaitable, Callable
from dataclasses import asdict

from loguru import logger

from .config import Settings
from .credentials import CredentialAuthority
from .errors import BrokerError, Forbidden, NotFound, Unavailable
from .identity import GoogleIdentityProvider, IdentityProvider
from .keystore import KeyStore
from .models import OWNING_ROLES
from .notifications import HttpEmailSender, Notifier, TwilioSmsSender
from .persona import PersonaAuthority
from .registry import RingRegistry
from .rings import RingMembership
from .storage import StorageAdapter, open_storage
from .vault import PrivacyVault
from .visibility import KeyVisibilityLedger


def _failure(error: BrokerError) -> dict:
    return {"success": False, "status": error.status, "error": error.message}


def _ring_view(ring) -> dict:
    return {
        "ring_id": ring.ring_id,
        "created_by": ring.created_by,
        "created_at": ring.created_at,
        "updated_at": ring.updated_at,
        "anchored_by": ring.anchored_by,
        "members": ring.role_map(),
        "metadata": ring.metadata.to_dict(),
    }


class SecretBroker:
    """Multi-tenant secret broker.

    Wires storage, rings, visibility, vault, persona and credentials
    together and runs the fixed request sequence for each operation:
    resolve credential, authorize ring, authorize key.
    """

    def __init__(
        self,
        settings: Settings,
        storage: StorageAdapter | None = None,
        sms_sender: Notifier | None = None,
        email_sender: Notifier | None = None,
        identity_provider: IdentityProvider | None = None,
    ):
        if not settings.master_passphrase:
            raise ValueError("RINGBROKER_MASTER_PASSPHRASE must be set")
        self.settings = settings
        self.storage = storage or open_storage(
            settings.storage_backend,
            settings.sqlite_path,
            timeout=settings.storage_timeout_seconds,
        )
        self.persona = PersonaAuthority(self.storage)
        self.rings = RingMembership(self.storage, self.persona)
        self.registry = RingRegistry(self.storage, self.rings)
        self.visibility = KeyVisibilityLedger(self.storage, self.rings)
        self.keys = KeyStore(
            self.storage,
            self.rings,
            self.visibility,
            settings.master_passphrase,
            iterations=settings.pbkdf2_iterations,
        )
        self.vault = PrivacyVault(
            self.storage,
            self.rings,
            settings.master_passphrase,
            iterations=settings.pbkdf2_iterations,
        )
        self.credentials = CredentialAuthority(
            self.storage,
            self.persona,
            self.rings,
            settings,
            sms_sender=sms_sender,
            email_sender=email_sender,
        )
        self.identity = identity_provider

    @classmethod
    def from_settings(cls, settings: Settings) -> "SecretBroker":
        """Build a broker with the HTTP senders and identity provider configured in ``settings``."""
        sender_opts = {
            "timeout": settings.notification_timeout_seconds,
            "max_attempts": settings.notification_max_attempts,
        }
        return cls(
            settings,
            sms_sender=TwilioSmsSender(
                settings.twilio_account_sid,
                settings.twilio_auth_token,
                settings.twilio_from_number,
                **sender_opts,
            ),
            email_sender=HttpEmailSender(
                settings.email_api_url,
                settings.email_api_key,
                settings.email_from,
                **sender_opts,
            ),
            identity_provider=GoogleIdentityProvider(
                settings.google_client_id,
                timeout=settings.notification_timeout_seconds,
            )
            if settings.google_client_id
            else None,
        )

    # ── Plumbing ───────────────────────────────────────────────────

    def _refused(self, operation: str, e: BrokerError) -> dict:
        if isinstance(e, Unavailable):
            logger.opt(exception=e).warning(f"{operation} failed: backend unavailable")
        else:
            logger.debug(f"{operation} refused ({e.status}): {e.message}")
        return _failure(e)

    def _guard(self, operation: str, fn: Callable[[], dict]) -> dict:
        try:
            return {"success": True, **fn()}
        except BrokerError as e:
            return self._refused(operation, e)

    async def _guard_async(self, operation: str, fn: Callable[[], Awaitable[dict]]) -> dict:
        try:
            return {"success": True, **(await fn())}
        except BrokerError as e:
            return self._refused(operation, e)

    def _authed(self, operation: str, credential: str | None, fn: Callable[[str, str | None], dict]) -> dict:
        """Resolve ``credential`` then run ``fn(principal, home_ring_id)``."""

        def run():
            resolution = self.credentials.resolve_credential(credential)
            principal = resolution.unwrap()
            return fn(principal, resolution.ring_id)

        return self._guard(operation, run)

    @staticmethod
    def _ring(ring_id: str | None, home: str | None) -> str:
        ring_id = ring_id or home
        if not ring_id:
            raise NotFound("No ring specified and none is associated with this principal")
        return ring_id

    # ── Credentials (unauthenticated entry points) ─────────────────

    def issue_elevation_code(self, fragment: str) -> dict:
        return self._guard(
            "issue_elevation_code",
            lambda: asdict(self.credentials.issue_elevation_code(fragment)),
        )

    def issue_bearer_token(
        self,
        principal: str,
        client_id: str,
        client_type: str = "generic",
        expires_in_days: int | None = None,
        *,
        elevation_code: str,
    ) -> dict:
        return self._guard(
            "issue_bearer_token",
            lambda: asdict(
                self.credentials.issue_bearer_token(
                    principal,
                    client_id,
                    client_type,
                    expires_in_days,
                    elevation_code=elevation_code,
                )
            ),
        )

    def verify_device_challenge(self, challenge_id: str, code: str) -> dict:
        return self._guard(
            "verify_device_challenge",
            lambda: asdict(self.credentials.verify_device_challenge(challenge_id, code)),
        )

    async def verify_identity(self, artifact: str, method: str = "google") -> dict:
        """Verify a human through the configured identity provider."""

        async def run():
            if self.identity is None:
                raise Unavailable("No identity provider configured")
            account = await self.persona.verify_with_provider(artifact, self.identity, method)
            return {
                "principal": account.identifier,
                "tier": self.persona.classify(account.identifier).value,
            }

        return await self._guard_async("verify_identity", run)

    # ── Session ────────────────────────────────────────────────────

    def whoami(self, credential: str) -> dict:
        def fn(principal, home):
            return {
                "principal": principal,
                "ring_id": home,
                "rings": self.rings.rings_for(principal),
                "tier": self.persona.classify(principal).value,
            }

        return self._authed("whoami", credential, fn)

    def revoke_token(self, credential: str) -> dict:
        def fn(principal, home):
            return {"revoked": self.credentials.revoke_bearer_token(credential)}

        return self._authed("revoke_token", credential, fn)

    async def begin_device_challenge(self, credential: str, fingerprint, **delivery) -> dict:
        """Start enrolling a device for the principal behind ``credential``.

        The device token issued on verification always belongs to that
        principal; there is no way to name another one.
        """

        async def run():
            principal = self.credentials.resolve_credential(credential).unwrap()
            receipt = await self.credentials.begin_device_challenge(principal, fingerprint, **delivery)
            return asdict(receipt)

        return await self._guard_async("begin_device_challenge", run)

    def list_devices(self, credential: str) -> dict:
        def fn(principal, home):
            devices = self.credentials.list_devices(principal)
            return {"devices": [d.to_dict() for d in devices], "count": len(devices)}

        return self._authed("list_devices", credential, fn)

    def revoke_device(self, credential: str, device_id: str) -> dict:
        return self._authed(
            "revoke_device",
            credential,
            lambda p, home: {"revoked": self.credentials.revoke_device(device_id, p)},
        )

    # ── Rings ──────────────────────────────────────────────────────

    def create_ring(
        self,
        credential: str,
        ring_id: str | None = None,
        initial_roles: dict[str, list[str]] | None = None,
        metadata: dict | None = None,
    ) -> dict:
        def fn(principal, home):
            ring = self.rings.create_ring(
                ring_id, principal, initial_roles, creator=principal, metadata=metadata
            )
            return {"ring": _ring_view(ring)}

        return self._authed("create_ring", credential, fn)

    def get_ring(self, credential: str, ring_id: str | None = None) -> dict:
        def fn(principal, home):
            rid = self._ring(ring_id, home)
            ring = self.rings.get_ring(rid)
            if not ring.roles_of(principal):
                raise Forbidden(f"{principal} is not a member of ring {rid}")
            return {"ring": _ring_view(ring)}

        return self._authed("get_ring", credential, fn)

    def add_member(self, credential: str, ring_id: str, principal: str, roles=None) -> dict:
        return self._authed(
            "add_member",
            credential,
            lambda actor, home: {
                "ring": _ring_view(self.rings.add_member(ring_id, principal, roles, actor=actor))
            },
        )

    def remove_member(self, credential: str, ring_id: str, principal: str) -> dict:
        return self._authed(
            "remove_member",
            credential,
            lambda actor, home: {
                "ring": _ring_view(self.rings.remove_member(ring_id, principal, actor=actor))
            },
        )

    def set_roles(self, credential: str, ring_id: str, role_map: dict[str, list[str]]) -> dict:
        return self._authed(
            "set_roles",
            credential,
            lambda actor, home: {
                "ring": _ring_view(self.rings.set_roles(ring_id, role_map, actor=actor))
            },
        )

    def anchor_ring(self, credential: str, ring_id: str) -> dict:
        return self._authed(
            "anchor_ring",
            credential,
            lambda p, home: {"ring": _ring_view(self.rings.anchor_identity(ring_id, p))},
        )

    def delete_ring(self, credential: str, ring_id: str) -> dict:
        def fn(principal, home):
            self.rings.delete_ring(ring_id, actor=principal)
            self.registry.unregister(ring_id)
            return {"ring_id": ring_id, "deleted": True}

        return self._authed("delete_ring", credential, fn)

    # ── Registry ───────────────────────────────────────────────────

    def discover_rings(self, include_anonymous: bool = True) -> dict:
        def fn():
            found = self.registry.discover(include_anonymous)
            return {"rings": {k: v.to_dict() for k, v in found.items()}, "count": len(found)}

        return self._guard("discover_rings", fn)

    def search_rings(self, capability: str) -> dict:
        def fn():
            found = self.registry.search_by_capability(capability)
            return {"rings": {k: v.to_dict() for k, v in found.items()}, "count": len(found)}

        return self._guard("search_rings", fn)

    def register_ring(
        self,
        credential: str,
        ring_id: str,
        public_name: str | None = None,
        capabilities: list[str] | None = None,
    ) -> dict:
        def fn(principal, home):
            if not OWNING_ROLES & set(self.rings.member_roles(ring_id, principal)):
                raise Forbidden("Only owners or architects can publish a ring")
            info = self.registry.update_metadata(ring_id, public_name, capabilities)
            return {"registration": info.to_dict()}

        return self._authed("register_ring", credential, fn)

    # ── Keys ───────────────────────────────────────────────────────

    def put_key(
        self,
        credential: str,
        key_name: str,
        value: str,
        ring_id: str | None = None,
        labels: dict | None = None,
        shared: bool = False,
    ) -> dict:
        return self._authed(
            "put_key",
            credential,
            lambda p, home: self.keys.put(
                self._ring(ring_id, home), key_name, value, actor=p, labels=labels, shared=shared
            ),
        )

    def get_key(self, credential: str, key_name: str, ring_id: str | None = None) -> dict:
        def fn(principal, home):
            rid = self._ring(ring_id, home)
            record = self.keys.get_record(rid, key_name, actor=principal)
            return {
                "ring_id": rid,
                "key_name": key_name,
                "value": self.keys.reveal(record),
                "labels": record.labels,
                "created_at": record.created_at,
                "updated_at": record.updated_at,
            }

        return self._authed("get_key", credential, fn)

    def list_keys(self, credential: str, ring_id: str | None = None) -> dict:
        def fn(principal, home):
            rid = self._ring(ring_id, home)
            names = self.keys.list_keys(rid, actor=principal)
            return {"ring_id": rid, "keys": names, "count": len(names)}

        return self._authed("list_keys", credential, fn)

    def delete_key(self, credential: str, key_name: str, ring_id: str | None = None) -> dict:
        def fn(principal, home):
            rid = self._ring(ring_id, home)
            return {"ring_id": rid, "key_name": key_name, "deleted": self.keys.delete(rid, key_name, actor=principal)}

        return self._authed("delete_key", credential, fn)

    def copy_key(self, credential: str, source_ring_id: str, target_ring_id: str, key_name: str, new_name: str | None = None) -> dict:
        return self._authed(
            "copy_key",
            credential,
            lambda p, home: self.keys.copy_key(source_ring_id, target_ring_id, key_name, actor=p, new_name=new_name),
        )

    def move_key(self, credential: str, source_ring_id: str, target_ring_id: str, key_name: str, new_name: str | None = None) -> dict:
        return self._authed(
            "move_key",
            credential,
            lambda p, home: self.keys.move_key(source_ring_id, target_ring_id, key_name, actor=p, new_name=new_name),
        )

    # ── Visibility workflow ────────────────────────────────────────

    def describe_key(self, credential: str, key_name: str, ring_id: str | None = None) -> dict:
        def fn(principal, home):
            record = self.visibility.describe(self._ring(ring_id, home), key_name, principal)
            return {"visibility": record.to_dict()}

        return self._authed("describe_key", credential, fn)

    def request_access(self, credential: str, key_name: str, reason: str, ring_id: str | None = None) -> dict:
        def fn(principal, home):
            request = self.visibility.request_access(self._ring(ring_id, home), key_name, principal, reason)
            return {"request": request.to_dict(), "requested": True}

        return self._authed("request_access", credential, fn)

    def pending_requests(self, credential: str, key_name: str, ring_id: str | None = None) -> dict:
        def fn(principal, home):
            requests = self.visibility.pending_requests(self._ring(ring_id, home), key_name, principal)
            return {"requests": [r.to_dict() for r in requests], "count": len(requests)}

        return self._authed("pending_requests", credential, fn)

    def grant_access(self, credential: str, key_name: str, grantee: str, ring_id: str | None = None) -> dict:
        def fn(principal, home):
            granted = self.visibility.grant_access(self._ring(ring_id, home), key_name, grantee, principal)
            return {"granted": granted, "grantee": grantee}

        return self._authed("grant_access", credential, fn)

    def deny_request(self, credential: str, key_name: str, requester: str, ring_id: str | None = None) -> dict:
        def fn(principal, home):
            denied = self.visibility.deny_request(self._ring(ring_id, home), key_name, requester, principal)
            return {"denied": denied, "requester": requester}

        return self._authed("deny_request", credential, fn)

    def revoke_access(self, credential: str, key_name: str, grantee: str, ring_id: str | None = None) -> dict:
        def fn(principal, home):
            revoked = self.visibility.revoke_access(self._ring(ring_id, home), key_name, grantee, principal)
            return {"revoked": revoked, "grantee": grantee}

        return self._authed("revoke_access", credential, fn)

    def share_key(self, credential: str, key_name: str, shared: bool = True, ring_id: str | None = None) -> dict:
        def fn(principal, home):
            record = self.visibility.share_with_ring(self._ring(ring_id, home), key_name, principal, shared)
            return {"visibility": record.to_dict()}

        return self._authed("share_key", credential, fn)

    # ── Privacy vault ──────────────────────────────────────────────

    def vault_store(
        self,
        credential: str,
        key_name: str,
        vault_secret_name: str,
        value: str,
        ring_id: str | None = None,
        master_key: str | None = None,
    ) -> dict:
        def fn(principal, home):
            receipt = self.vault.store(
                self._ring(ring_id, home), key_name, principal, vault_secret_name, value, master_key,
                principal=principal,
            )
            return asdict(receipt)

        return self._authed("vault_store", credential, fn)

    def vault_get(
        self,
        credential: str,
        key_name: str,
        vault_secret_name: str,
        ring_id: str | None = None,
        master_key: str | None = None,
    ) -> dict:
        def fn(principal, home):
            value = self.vault.get(
                self._ring(ring_id, home), key_name, principal, vault_secret_name, master_key,
                principal=principal,
            )
            return {"vault_secret_name": vault_secret_name, "value": value}

        return self._authed("vault_get", credential, fn)

    def vault_list(self, credential: str, key_name: str, ring_id: str | None = None) -> dict:
        def fn(principal, home):
            names = self.vault.list(self._ring(ring_id, home), key_name, principal, principal=principal)
            return {"secrets": names, "count": len(names)}

        return self._authed("vault_list", credential, fn)

    def vault_delete(self, credential: str, key_name: str, vault_secret_name: str, ring_id: str | None = None) -> dict:
        def fn(principal, home):
            deleted = self.vault.delete(
                self._ring(ring_id, home), key_name, principal, vault_secret_name, principal=principal
            )
            return {"deleted": deleted}

        return self._authed("vault_delete", credential, fn)

    # ── Delegation ─────────────────────────────────────────────────

    def delegate_agent(self, credential: str, agent: str, capabilities: list[str] | None = None) -> dict:
        def fn(principal, home):
            account = self.persona.delegate_agent(principal, agent, capabilities)
            return {"agent": account.identifier, "delegated_by": account.delegated_by}

        return self._authed("delegate_agent", credential, fn)

    def revoke_delegation(self, credential: str, agent: str) -> dict:
        def fn(principal, home):
            account = self.persona.revoke_delegation(principal, agent)
            return {"agent": account.identifier, "revoked": account.delegation_revoked}

        return self._authed("revoke_delegation", credential, fn)

    def delegated_agents(self, credential: str) -> dict:
        def fn(principal, home):
            agents = self.persona.delegated_agents(principal)
            return {
                "agents": [
                    {
                        "agent": a.identifier,
                        "capabilities": a.capabilities,
                        "revoked": a.delegation_revoked,
                        "valid": self.persona.is_delegation_valid(a.identifier),
                    }
                    for a in agents
                ],
                "count": len(agents),
            }

        return self._authed("delegated_agents", credential, fn)
