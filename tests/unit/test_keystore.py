"""Tests for ringbroker.keystore (ring-level secret values)."""

import pytest

from ringbroker.errors import Conflict, Forbidden, NotFound, Unavailable
from ringbroker.keystore import KeyStore
from ringbroker.models import StoredSecret
from ringbroker.visibility import meta_key, secret_key

from helpers import ALICE, BOB, CAROL


class TestPutGet:
    def test_put_then_get(self, keystore, ring_r1):
        result = keystore.put("r1", "db-password", "hunter2", actor=ALICE)
        assert result["action"] == "created"
        assert keystore.get("r1", "db-password", actor=ALICE) == "hunter2"

    def test_ciphertext_at_rest(self, keystore, storage, ring_r1):
        keystore.put("r1", "db-password", "hunter2-plaintext", actor=ALICE)
        raw = storage.get(secret_key("r1", "db-password"))
        assert "hunter2-plaintext" not in raw
        record = StoredSecret.from_json(raw)
        assert record.salt and record.iv and record.tag

    def test_other_member_forbidden_until_granted(self, keystore, visibility, ring_r1):
        keystore.put("r1", "db-password", "hunter2", actor=ALICE)
        with pytest.raises(Forbidden):
            keystore.get("r1", "db-password", actor=BOB)

        visibility.request_access("r1", "db-password", BOB, "deploy")
        visibility.grant_access("r1", "db-password", BOB, ALICE)
        assert keystore.get("r1", "db-password", actor=BOB) == "hunter2"

    def test_non_member_forbidden(self, keystore, ring_r1):
        keystore.put("r1", "db-password", "hunter2", actor=ALICE)
        with pytest.raises(Forbidden):
            keystore.get("r1", "db-password", actor=CAROL)

    def test_missing_key(self, keystore, ring_r1):
        with pytest.raises(NotFound):
            keystore.get("r1", "nope", actor=ALICE)

    def test_missing_ring(self, keystore):
        with pytest.raises(NotFound):
            keystore.put("ghost", "k", "v", actor=ALICE)

    def test_shared_put(self, keystore, ring_r1):
        keystore.put("r1", "wifi", "guest123", actor=ALICE, shared=True)
        assert keystore.get("r1", "wifi", actor=BOB) == "guest123"

    def test_empty_passphrase_rejected(self, storage, rings, visibility):
        with pytest.raises(ValueError):
            KeyStore(storage, rings, visibility, "")


class TestKeyNames:
    @pytest.mark.parametrize("name", ["db:meta", "", "a:b:c"])
    def test_unusable_names_rejected(self, keystore, ring_r1, name):
        with pytest.raises(Conflict):
            keystore.put("r1", name, "v", actor=ALICE)

    def test_name_cannot_reach_another_keys_records(self, keystore, visibility, ring_r1):
        keystore.put("r1", "db", "s3cret", actor=ALICE)
        with pytest.raises(Conflict):
            keystore.put("r1", "db:meta", "pwned", actor=BOB)
        with pytest.raises(Conflict):
            keystore.get("r1", "db:meta", actor=BOB)
        assert visibility.lookup("r1", "db").created_by == ALICE
        assert keystore.get("r1", "db", actor=ALICE) == "s3cret"

    def test_copy_to_unusable_name(self, keystore, ring_r1):
        keystore.put("r1", "db", "s3cret", actor=ALICE)
        with pytest.raises(Conflict):
            keystore.copy_key("r1", "r1", "db", actor=ALICE, new_name="db:meta")


class TestOverwrite:
    def test_update_keeps_created_at(self, keystore, storage, ring_r1, clock):
        keystore.put("r1", "k", "one", actor=ALICE, labels={"env": "prod"})
        first = StoredSecret.from_json(storage.get(secret_key("r1", "k")))
        clock.advance(minutes=1)
        result = keystore.put("r1", "k", "two", actor=ALICE, labels={"owner": "ops"})
        second = StoredSecret.from_json(storage.get(secret_key("r1", "k")))

        assert result["action"] == "updated"
        assert second.created_at == first.created_at
        assert second.updated_at != first.updated_at
        assert second.labels == {"env": "prod", "owner": "ops"}
        assert keystore.get("r1", "k", actor=ALICE) == "two"

    def test_non_viewer_cannot_overwrite(self, keystore, ring_r1):
        keystore.put("r1", "k", "one", actor=ALICE)
        with pytest.raises(Forbidden):
            keystore.put("r1", "k", "mine now", actor=BOB)
        assert keystore.get("r1", "k", actor=ALICE) == "one"

    def test_grantee_cannot_overwrite(self, keystore, visibility, ring_r1):
        keystore.put("r1", "db", "alice-secret", actor=ALICE)
        visibility.grant_access("r1", "db", BOB, ALICE)
        with pytest.raises(Forbidden):
            keystore.put("r1", "db", "bob-was-here", actor=BOB)
        assert keystore.get("r1", "db", actor=BOB) == "alice-secret"

    def test_ring_shared_member_cannot_overwrite(self, keystore, ring_r1):
        keystore.put("r1", "wifi", "guest123", actor=ALICE, shared=True)
        with pytest.raises(Forbidden):
            keystore.put("r1", "wifi", "open", actor=BOB)
        assert keystore.get("r1", "wifi", actor=BOB) == "guest123"

    def test_owner_overwrites_legacy_key(self, keystore, storage, ring_r1):
        keystore.put("r1", "old", "v1", actor=ALICE)
        storage.delete(meta_key("r1", "old"))
        with pytest.raises(Forbidden):
            keystore.put("r1", "old", "bob", actor=BOB)
        assert keystore.put("r1", "old", "v2", actor=ALICE)["action"] == "updated"
        assert keystore.get("r1", "old", actor=BOB) == "v2"


    def test_tampered_value_unavailable(self, keystore, storage, ring_r1):
        keystore.put("r1", "k", "one", actor=ALICE)
        record = StoredSecret.from_json(storage.get(secret_key("r1", "k")))
        record.tag = "00" * 16
        storage.set(secret_key("r1", "k"), record.to_json())
        with pytest.raises(Unavailable):
            keystore.get("r1", "k", actor=ALICE)


class TestListDelete:
    def test_list_only_visible(self, keystore, ring_r1):
        keystore.put("r1", "alice-key", "a", actor=ALICE)
        keystore.put("r1", "bob-key", "b", actor=BOB)
        assert keystore.list_keys("r1", actor=ALICE) == ["alice-key"]
        assert keystore.list_keys("r1", actor=BOB) == ["bob-key"]

    def test_creator_deletes(self, keystore, visibility, ring_r1):
        keystore.put("r1", "k", "v", actor=ALICE)
        assert keystore.delete("r1", "k", actor=ALICE) is True
        assert visibility.lookup("r1", "k") is None
        with pytest.raises(NotFound):
            keystore.get("r1", "k", actor=ALICE)

    def test_grantee_cannot_delete(self, keystore, visibility, ring_r1):
        keystore.put("r1", "k", "v", actor=ALICE)
        visibility.grant_access("r1", "k", BOB, ALICE)
        with pytest.raises(Forbidden):
            keystore.delete("r1", "k", actor=BOB)

    def test_delete_missing(self, keystore, ring_r1):
        with pytest.raises(NotFound):
            keystore.delete("r1", "nope", actor=ALICE)


class TestCopyMove:
    @pytest.fixture
    def ring_r2(self, rings, ring_r1):
        return rings.create_ring("r2", ALICE, {ALICE: ["owner"], CAROL: ["member"]}, creator=ALICE)

    def test_copy_between_rings(self, keystore, visibility, ring_r2):
        keystore.put("r1", "k", "v", actor=ALICE, labels={"env": "prod"})
        result = keystore.copy_key("r1", "r2", "k", actor=ALICE, new_name="k2")

        assert result["target_key_name"] == "k2"
        assert keystore.get("r1", "k", actor=ALICE) == "v"
        assert keystore.get("r2", "k2", actor=ALICE) == "v"
        labels = visibility.lookup("r2", "k2").labels
        assert labels["env"] == "prod"
        assert labels["copied_from"] == "r1"
        assert not visibility.can_view(CAROL, "r2", "k2")

    def test_copy_requires_target_membership(self, keystore, ring_r2):
        keystore.put("r1", "k", "v", actor=BOB, shared=True)
        with pytest.raises(Forbidden):
            keystore.copy_key("r1", "r2", "k", actor=BOB)

    def test_move(self, keystore, visibility, ring_r2):
        keystore.put("r1", "k", "v", actor=ALICE)
        result = keystore.move_key("r1", "r2", "k", actor=ALICE)
        assert result["moved"] is True
        assert visibility.lookup("r1", "k") is None
        assert keystore.get("r2", "k", actor=ALICE) == "v"

    def test_move_requires_creator(self, keystore, visibility, ring_r2):
        keystore.put("r1", "k", "v", actor=ALICE, shared=True)
        with pytest.raises(Forbidden):
            keystore.move_key("r1", "r2", "k", actor=BOB)
        assert visibility.lookup("r1", "k") is not None

    def test_move_missing(self, keystore, ring_r2):
        with pytest.raises(NotFound):
            keystore.move_key("r1", "r2", "nope", actor=ALICE)
