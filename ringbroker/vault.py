"""Privacy vault: values scoped to one (ring, key, principal) triple.

Vault entries bypass ring-wide visibility entirely. Only the exact
principal that wrote an entry can read, list or delete it; ring owners
and architects get no special treatment. The identity check runs before
any storage access so that an unauthenticated caller learns nothing.
"""

from collections.abc import Callable
from datetime import datetime

from cryptography.exceptions import InvalidTag
from loguru import logger

from . import crypto
from .errors import Conflict, Forbidden, NotFound, Unauthenticated
from .models import VaultEntry, VaultReceipt, iso, normalize_principal, utcnow
from .rings import RingMembership
from .storage import StorageAdapter, key_segment, list_add, list_remove, load_list


def vault_prefix(ring_id: str, key_name: str, owner: str) -> str:
    return (
        f"vault:ring:{key_segment(ring_id, 'Ring id')}"
        f":key:{key_segment(key_name, 'Key name')}"
        f":user:{key_segment(owner, 'Owner')}"
    )


class PrivacyVault:
    def __init__(
        self,
        storage: StorageAdapter,
        rings: RingMembership,
        default_master_key: str,
        iterations: int = crypto.PBKDF2_ITERATIONS,
        clock: Callable[[], datetime] = utcnow,
    ):
        if not default_master_key:
            raise ValueError("A default master key is required for the privacy vault")
        self._storage = storage
        self._rings = rings
        self._default_master_key = default_master_key
        self._iterations = iterations
        self._clock = clock

    @staticmethod
    def _authorize(owner: str | None, principal: str | None) -> str:
        principal = normalize_principal(principal)
        if principal is None:
            raise Unauthenticated("Authentication required")
        if normalize_principal(owner) != principal:
            logger.warning(f"{principal} denied access to a vault owned by another principal")
            raise Forbidden("Vault entries are only accessible to their owner")
        return principal

    def _entry_key(self, ring_id: str, key_name: str, owner: str, name: str) -> str:
        name = key_segment(name, "Vault secret name")
        return f"{vault_prefix(ring_id, key_name, owner)}:secret:{name}"

    def _list_key(self, ring_id: str, key_name: str, owner: str) -> str:
        return f"{vault_prefix(ring_id, key_name, owner)}:secrets:list"

    def _key(self, owner: str, key_name: str, salt: bytes, master_key: str | None) -> bytes:
        return crypto.derive_key(
            master_key or self._default_master_key,
            salt,
            context=f"{owner}:{key_name}",
            iterations=self._iterations,
        )

    def store(
        self,
        ring_id: str,
        key_name: str,
        owner: str,
        vault_secret_name: str,
        value: str,
        master_key: str | None = None,
        *,
        principal: str,
    ) -> VaultReceipt:
        owner = self._authorize(owner, principal)
        entry_key = self._entry_key(ring_id, key_name, owner, vault_secret_name)
        if value is None:
            raise Conflict("Value is required")
        self._rings.get_ring(ring_id)
        if not self._rings.is_member(ring_id, owner):
            raise Forbidden(f"{owner} is not a member of ring {ring_id}")

        salt = crypto.new_salt()
        sealed = crypto.encrypt(value.encode("utf-8"), self._key(owner, key_name, salt, master_key))
        now = iso(self._clock())
        created = []

        def fn(raw):
            previous = VaultEntry.from_json(raw) if raw else None
            created.append(previous is None)
            return VaultEntry(
                ring_id=ring_id,
                key_name=key_name,
                owner=owner,
                vault_secret_name=vault_secret_name,
                ciphertext=sealed.ciphertext.hex(),
                iv=sealed.iv.hex(),
                tag=sealed.tag.hex(),
                salt=salt.hex(),
                created_at=previous.created_at if previous else now,
                updated_at=now,
            ).to_json()

        self._storage.update(entry_key, fn)
        list_add(self._storage, self._list_key(ring_id, key_name, owner), vault_secret_name)
        action = "created" if created[-1] else "updated"
        logger.info(f"Vault secret {action} for {owner} under {ring_id}/{key_name}")
        return VaultReceipt(
            ring_id=ring_id,
            key_name=key_name,
            owner=owner,
            vault_secret_name=vault_secret_name,
            action=action,
            updated_at=now,
        )

    def get(
        self,
        ring_id: str,
        key_name: str,
        owner: str,
        vault_secret_name: str,
        master_key: str | None = None,
        *,
        principal: str,
    ) -> str:
        owner = self._authorize(owner, principal)
        raw = self._storage.get(self._entry_key(ring_id, key_name, owner, vault_secret_name))
        if raw is None:
            raise NotFound(f"Vault secret {vault_secret_name} not found")
        entry = VaultEntry.from_json(raw)
        key = self._key(owner, key_name, bytes.fromhex(entry.salt), master_key)
        try:
            plaintext = crypto.decrypt(
                bytes.fromhex(entry.ciphertext),
                bytes.fromhex(entry.iv),
                bytes.fromhex(entry.tag),
                key,
            )
        except InvalidTag as e:
            logger.warning(f"Vault decryption failed for {owner}: wrong master key")
            raise Forbidden("Vault secret could not be decrypted with the supplied master key") from e
        return plaintext.decode("utf-8")

    def delete(
        self,
        ring_id: str,
        key_name: str,
        owner: str,
        vault_secret_name: str,
        *,
        principal: str,
    ) -> bool:
        owner = self._authorize(owner, principal)
        removed = self._storage.delete(self._entry_key(ring_id, key_name, owner, vault_secret_name))
        list_remove(self._storage, self._list_key(ring_id, key_name, owner), vault_secret_name)
        if removed:
            logger.info(f"Vault secret deleted for {owner} under {ring_id}/{key_name}")
        return removed

    def has_vault(self, ring_id: str, key_name: str, owner: str, *, principal: str) -> bool:
        owner = self._authorize(owner, principal)
        return bool(load_list(self._storage, self._list_key(ring_id, key_name, owner)))

    def metadata(self, ring_id: str, key_name: str, owner: str, *, principal: str) -> dict:
        """Names and timestamps of the owner's vault secrets; never values."""
        owner = self._authorize(owner, principal)
        secrets = []
        for name in load_list(self._storage, self._list_key(ring_id, key_name, owner)):
            raw = self._storage.get(self._entry_key(ring_id, key_name, owner, name))
            if raw is None:
                continue
            entry = VaultEntry.from_json(raw)
            secrets.append(
                {"name": name, "created_at": entry.created_at, "updated_at": entry.updated_at}
            )
        return {
            "ring_id": ring_id,
            "key_name": key_name,
            "owner": owner,
            "secret_count": len(secrets),
            "secrets": secrets,
        }

    # Defined last: the name shadows the builtin inside the class body
    def list(self, ring_id: str, key_name: str, owner: str, *, principal: str):
        owner = self._authorize(owner, principal)
        return load_list(self._storage, self._list_key(ring_id, key_name, owner))
