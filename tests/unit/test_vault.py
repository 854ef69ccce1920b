"""Tests for ringbroker.vault (per-principal privacy vault)."""

from unittest.mock import MagicMock

import pytest

from ringbroker.errors import Conflict, Forbidden, NotFound, Unauthenticated
from ringbroker.vault import PrivacyVault

from helpers import ALICE, BOB, CAROL


class TestVaultAccess:
    def test_store_and_get(self, vault, ring_r1):
        receipt = vault.store("r1", "db", ALICE, "personal", "s3cret", principal=ALICE)
        assert receipt.action == "created"
        assert receipt.owner == ALICE
        assert vault.get("r1", "db", ALICE, "personal", principal=ALICE) == "s3cret"

    def test_owner_is_normalized(self, vault, ring_r1):
        vault.store("r1", "db", "Alice@X.com", "personal", "s3cret", principal=ALICE)
        assert vault.get("r1", "db", ALICE, "personal", principal=" ALICE@x.com") == "s3cret"

    def test_other_principal_forbidden(self, vault, ring_r1):
        vault.store("r1", "db", BOB, "personal", "bob-only", principal=BOB)
        with pytest.raises(Forbidden):
            vault.get("r1", "db", BOB, "personal", principal=ALICE)

    def test_ring_owner_gets_no_bypass(self, vault, ring_r1):
        vault.store("r1", "db", BOB, "personal", "bob-only", principal=BOB)
        for op in (vault.list, vault.has_vault, vault.metadata):
            with pytest.raises(Forbidden):
                op("r1", "db", BOB, principal=ALICE)
        with pytest.raises(Forbidden):
            vault.delete("r1", "db", BOB, "personal", principal=ALICE)

    def test_missing_principal_touches_nothing(self, rings):
        storage = MagicMock()
        vault = PrivacyVault(storage, rings, "master", iterations=1_000)
        with pytest.raises(Unauthenticated):
            vault.get("r1", "db", ALICE, "personal", principal=None)
        with pytest.raises(Unauthenticated):
            vault.store("r1", "db", ALICE, "personal", "v", principal="  ")
        storage.get.assert_not_called()
        storage.update.assert_not_called()

    def test_non_member_cannot_store(self, vault, ring_r1):
        with pytest.raises(Forbidden):
            vault.store("r1", "db", CAROL, "personal", "v", principal=CAROL)

    def test_missing_entry(self, vault, ring_r1):
        with pytest.raises(NotFound):
            vault.get("r1", "db", ALICE, "nope", principal=ALICE)

    @pytest.mark.parametrize(
        "key_name, secret_name",
        [("db", "personal:secret:x"), ("db", ""), ("db:x", "personal"), ("", "personal")],
    )
    def test_unusable_names_rejected(self, vault, storage, ring_r1, key_name, secret_name):
        with pytest.raises(Conflict):
            vault.store("r1", key_name, ALICE, secret_name, "v", principal=ALICE)
        assert storage.keys("vault:") == []



class TestVaultEncryption:
    def test_custom_master_key(self, vault, ring_r1):
        vault.store("r1", "db", ALICE, "personal", "s3cret", master_key="mine", principal=ALICE)
        assert vault.get("r1", "db", ALICE, "personal", master_key="mine", principal=ALICE) == "s3cret"

    def test_wrong_master_key_forbidden(self, vault, ring_r1):
        vault.store("r1", "db", ALICE, "personal", "s3cret", master_key="mine", principal=ALICE)
        with pytest.raises(Forbidden):
            vault.get("r1", "db", ALICE, "personal", master_key="other", principal=ALICE)

    def test_value_not_stored_in_clear(self, vault, storage, ring_r1):
        vault.store("r1", "db", ALICE, "personal", "plain-text-value", principal=ALICE)
        for key in storage.keys("vault:"):
            assert "plain-text-value" not in storage.get(key)


class TestVaultListing:
    def test_list_and_metadata(self, vault, ring_r1, clock):
        vault.store("r1", "db", ALICE, "a", "1", principal=ALICE)
        clock.advance(seconds=5)
        receipt = vault.store("r1", "db", ALICE, "a", "2", principal=ALICE)
        vault.store("r1", "db", ALICE, "b", "3", principal=ALICE)

        assert receipt.action == "updated"
        assert vault.list("r1", "db", ALICE, principal=ALICE) == ["a", "b"]
        assert vault.has_vault("r1", "db", ALICE, principal=ALICE)
        meta = vault.metadata("r1", "db", ALICE, principal=ALICE)
        assert meta["secret_count"] == 2
        assert set(meta["secrets"][0]) == {"name", "created_at", "updated_at"}
        assert meta["secrets"][0]["created_at"] != meta["secrets"][0]["updated_at"]

    def test_delete(self, vault, ring_r1):
        vault.store("r1", "db", ALICE, "a", "1", principal=ALICE)
        assert vault.delete("r1", "db", ALICE, "a", principal=ALICE) is True
        assert vault.delete("r1", "db", ALICE, "a", principal=ALICE) is False
        assert not vault.has_vault("r1", "db", ALICE, principal=ALICE)

    def test_independent_of_ring_key(self, vault, keystore, ring_r1):
        keystore.put("r1", "db", "shared", actor=ALICE)
        vault.store("r1", "db", ALICE, "personal", "mine", principal=ALICE)
        keystore.delete("r1", "db", actor=ALICE)
        assert vault.get("r1", "db", ALICE, "personal", principal=ALICE) == "mine"
