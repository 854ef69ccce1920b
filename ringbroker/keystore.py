"""Ring-level secret values.

Values are encrypted at rest with a key stretched once from the process
master passphrase; each value gets its own HKDF subkey bound to a random
salt and its ``ring:key`` name. Who may read a value is decided by the
visibility ledger, never here.
"""

from collections.abc import Callable
from datetime import datetime

from cryptography.exceptions import InvalidTag
from loguru import logger

from . import crypto
from .errors import Conflict, Forbidden, NotFound, Unavailable
from .models import StoredSecret, iso, normalize_principal, utcnow
from .rings import RingMembership
from .storage import StorageAdapter, key_segment
from .visibility import KeyVisibilityLedger, secret_key

STORE_SALT = b"ringbroker:ring-store:v1"


class KeyStore:
    def __init__(
        self,
        storage: StorageAdapter,
        rings: RingMembership,
        visibility: KeyVisibilityLedger,
        master_passphrase: str,
        iterations: int = crypto.PBKDF2_ITERATIONS,
        clock: Callable[[], datetime] = utcnow,
    ):
        if not master_passphrase:
            raise ValueError("A master passphrase is required for the ring key store")
        self._storage = storage
        self._rings = rings
        self._visibility = visibility
        self._passphrase = master_passphrase
        self._iterations = iterations
        self._clock = clock
        self._root_key: bytes | None = None

    def _store_key(self) -> bytes:
        # Racing requests may both derive it; the result is identical
        if self._root_key is None:
            self._root_key = crypto.derive_key(
                self._passphrase, STORE_SALT, iterations=self._iterations
            )
        return self._root_key

    def _value_key(self, ring_id: str, key_name: str, salt: bytes) -> bytes:
        return crypto.derive_subkey(self._store_key(), salt, f"{ring_id}:{key_name}")

    def _require_member(self, ring_id: str, actor: str | None) -> str:
        actor = normalize_principal(actor)
        self._rings.get_ring(ring_id)
        if not self._rings.is_member(ring_id, actor):
            raise Forbidden(f"{actor} is not a member of ring {ring_id}")
        return actor

    # ── Operations ─────────────────────────────────────────────────

    def put(
        self,
        ring_id: str,
        key_name: str,
        value: str,
        *,
        actor: str,
        labels: dict | None = None,
        shared: bool = False,
    ) -> dict:
        key_segment(key_name, "Key name")
        if value is None:
            raise Conflict("Value is required")
        actor = self._require_member(ring_id, actor)

        existing = self._visibility.lookup(ring_id, key_name)
        if existing is None:
            self._visibility.register_key(ring_id, key_name, actor, shared=shared, labels=labels)
        elif not self._visibility.can_manage(actor, ring_id, key_name):
            raise Forbidden(f"{actor} cannot overwrite {key_name}")
        elif labels and existing.created_by is not None:
            self._visibility.set_labels(ring_id, key_name, labels)

        now = iso(self._clock())
        salt = crypto.new_salt()
        sealed = crypto.encrypt(value.encode("utf-8"), self._value_key(ring_id, key_name, salt))
        created = []

        def fn(raw):
            previous = StoredSecret.from_json(raw) if raw else None
            created.append(previous is None)
            return StoredSecret(
                ring_id=ring_id,
                key_name=key_name,
                ciphertext=sealed.ciphertext.hex(),
                iv=sealed.iv.hex(),
                tag=sealed.tag.hex(),
                salt=salt.hex(),
                created_at=previous.created_at if previous else now,
                updated_at=now,
                labels={**(previous.labels if previous else {}), **(labels or {})},
            ).to_json()

        self._storage.update(secret_key(ring_id, key_name), fn)
        action = "created" if created[-1] else "updated"
        logger.info(f"Key {key_name} {action} in ring {ring_id} by {actor}")
        return {"ring_id": ring_id, "key_name": key_name, "action": action, "updated_at": now}

    def _load(self, ring_id: str, key_name: str) -> StoredSecret:
        raw = self._storage.get(secret_key(ring_id, key_name))
        if raw is None:
            raise NotFound(f"Key {key_name} not found in ring {ring_id}")
        return StoredSecret.from_json(raw)

    def _decrypt(self, record: StoredSecret) -> str:
        key = self._value_key(record.ring_id, record.key_name, bytes.fromhex(record.salt))
        try:
            plaintext = crypto.decrypt(
                bytes.fromhex(record.ciphertext),
                bytes.fromhex(record.iv),
                bytes.fromhex(record.tag),
                key,
            )
        except InvalidTag as e:
            logger.error(f"Stored value for {record.key_name} in ring {record.ring_id} failed authentication")
            raise Unavailable("Stored value could not be decrypted") from e
        return plaintext.decode("utf-8")

    def get_record(self, ring_id: str, key_name: str, *, actor: str) -> StoredSecret:
        """Stored record (ciphertext and labels) for a key the actor can view."""
        actor = self._require_member(ring_id, actor)
        if self._visibility.lookup(ring_id, key_name) is None:
            raise NotFound(f"Key {key_name} not found in ring {ring_id}")
        if not self._visibility.can_view(actor, ring_id, key_name):
            logger.warning(f"{actor} denied read of {key_name} in ring {ring_id}")
            raise Forbidden(f"{actor} cannot view {key_name}")
        return self._load(ring_id, key_name)

    def get(self, ring_id: str, key_name: str, *, actor: str) -> str:
        return self._decrypt(self.get_record(ring_id, key_name, actor=actor))

    def reveal(self, record: StoredSecret) -> str:
        """Plaintext of a record obtained through ``get_record``."""
        return self._decrypt(record)

    def list_keys(self, ring_id: str, *, actor: str) -> list[str]:
        actor = self._require_member(ring_id, actor)
        return self._visibility.visible_keys(ring_id, actor)

    def delete(self, ring_id: str, key_name: str, *, actor: str) -> bool:
        actor = self._require_member(ring_id, actor)
        if self._visibility.lookup(ring_id, key_name) is None:
            raise NotFound(f"Key {key_name} not found in ring {ring_id}")
        if not self._visibility.can_manage(actor, ring_id, key_name):
            raise Forbidden(f"Only the creator of {key_name} can delete it")
        self._storage.delete(secret_key(ring_id, key_name))
        self._visibility.forget_key(ring_id, key_name)
        logger.info(f"Key {key_name} deleted from ring {ring_id} by {actor}")
        return True

    def copy_key(
        self,
        source_ring_id: str,
        target_ring_id: str,
        key_name: str,
        *,
        actor: str,
        new_name: str | None = None,
    ) -> dict:
        """Copy a value the actor can read into another ring the actor belongs to.

        The actor becomes the creator of the copy; grants are not carried over.
        """
        record = self.get_record(source_ring_id, key_name, actor=actor)
        value = self._decrypt(record)
        target_name = new_name or key_name
        labels = {
            **record.labels,
            "copied_from": source_ring_id,
            "copied_at": iso(self._clock()),
        }
        result = self.put(target_ring_id, target_name, value, actor=actor, labels=labels)
        return {
            "source_ring_id": source_ring_id,
            "target_ring_id": target_ring_id,
            "source_key_name": key_name,
            "target_key_name": target_name,
            "action": result["action"],
        }

    def move_key(
        self,
        source_ring_id: str,
        target_ring_id: str,
        key_name: str,
        *,
        actor: str,
        new_name: str | None = None,
    ) -> dict:
        if not self._visibility.can_manage(actor, source_ring_id, key_name):
            if self._visibility.lookup(source_ring_id, key_name) is None:
                raise NotFound(f"Key {key_name} not found in ring {source_ring_id}")
            raise Forbidden(f"Only the creator of {key_name} can move it")
        result = self.copy_key(source_ring_id, target_ring_id, key_name, actor=actor, new_name=new_name)
        self.delete(source_ring_id, key_name, actor=actor)
        result["moved"] = True
        return result
