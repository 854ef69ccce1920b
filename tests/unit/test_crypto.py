"""Tests for ringbroker.crypto module."""

import os

import pytest
from cryptography.exceptions import InvalidTag

from ringbroker.crypto import (
    TAG_SIZE,
    decrypt,
    derive_key,
    derive_subkey,
    encrypt,
    fingerprint_hash,
    generate_bearer_token,
    generate_elevation_code,
    generate_numeric_code,
    hash_token,
    tokens_match,
)

FAST = 1_000


class TestDeriveKey:
    def test_deterministic_with_same_salt(self):
        salt = os.urandom(16)
        assert derive_key("pass", salt, iterations=FAST) == derive_key("pass", salt, iterations=FAST)

    def test_context_changes_key(self):
        salt = os.urandom(16)
        k1 = derive_key("pass", salt, "alice:db", iterations=FAST)
        k2 = derive_key("pass", salt, "bob:db", iterations=FAST)
        assert k1 != k2

    def test_key_length(self):
        assert len(derive_key("pass", os.urandom(16), iterations=FAST)) == 32

    def test_subkey_bound_to_context(self):
        root = os.urandom(32)
        salt = os.urandom(16)
        assert derive_subkey(root, salt, "r1:a") != derive_subkey(root, salt, "r1:b")
        assert derive_subkey(root, salt, "r1:a") == derive_subkey(root, salt, "r1:a")


class TestEncryptDecrypt:
    def test_roundtrip(self):
        key = os.urandom(32)
        sealed = encrypt(b"hello world", key)
        assert decrypt(sealed.ciphertext, sealed.iv, sealed.tag, key) == b"hello world"

    def test_tag_is_split_off(self):
        sealed = encrypt(b"abc", os.urandom(32))
        assert len(sealed.tag) == TAG_SIZE
        assert len(sealed.ciphertext) == 3

    def test_fresh_nonce_each_time(self):
        key = os.urandom(32)
        assert encrypt(b"x", key).iv != encrypt(b"x", key).iv

    def test_wrong_key_fails(self):
        sealed = encrypt(b"secret", os.urandom(32))
        with pytest.raises(InvalidTag):
            decrypt(sealed.ciphertext, sealed.iv, sealed.tag, os.urandom(32))

    def test_tampered_tag_fails(self):
        key = os.urandom(32)
        sealed = encrypt(b"secret", key)
        tag = bytearray(sealed.tag)
        tag[0] ^= 0xFF
        with pytest.raises(InvalidTag):
            decrypt(sealed.ciphertext, sealed.iv, bytes(tag), key)


class TestTokens:
    def test_hash_is_sha256_hex(self):
        h = hash_token("test")
        assert len(h) == 64
        assert all(c in "0123456789abcdef" for c in h)

    def test_tokens_match(self):
        assert tokens_match("abc", hash_token("abc"))
        assert not tokens_match("abd", hash_token("abc"))

    def test_bearer_tokens_unique(self):
        tokens = {generate_bearer_token() for _ in range(100)}
        assert len(tokens) == 100
        assert all(len(t) == 64 for t in tokens)

    def test_numeric_code_shape(self):
        for _ in range(50):
            code = generate_numeric_code(4)
            assert len(code) == 4
            assert code.isdigit()
            assert code[0] != "0"

    def test_elevation_code_is_hex(self):
        code = generate_elevation_code()
        assert len(code) == 16
        int(code, 16)


class TestFingerprint:
    def test_dict_order_irrelevant(self):
        a = fingerprint_hash({"ua": "firefox", "os": "linux"})
        b = fingerprint_hash({"os": "linux", "ua": "firefox"})
        assert a == b

    def test_string_fingerprint(self):
        assert fingerprint_hash("laptop-1") != fingerprint_hash("laptop-2")
