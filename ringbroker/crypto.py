"""Cryptographic primitives for the broker.

Key hierarchy:
    Master passphrase (env var or caller-supplied master key)
        └── PBKDF2-HMAC-SHA256 with a per-value random salt
                └── AES-256-GCM key that encrypts one stored value

Raw credentials (bearer tokens, device tokens, 2FA and elevation codes) are
never persisted; only their SHA-256 digests are.
"""

import hashlib
import hmac
import os
import secrets
from dataclasses import dataclass

from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

NONCE_SIZE = 12  # 96 bits, standard for AES-GCM
TAG_SIZE = 16  # GCM authentication tag appended by AESGCM.encrypt
KEY_SIZE = 32  # 256 bits for AES-256
SALT_SIZE = 16
PBKDF2_ITERATIONS = 600_000  # OWASP 2023 recommendation for SHA-256


@dataclass
class EncryptedValue:
    ciphertext: bytes
    iv: bytes
    tag: bytes


def derive_key(
    passphrase: str,
    salt: bytes,
    context: str = "",
    iterations: int = PBKDF2_ITERATIONS,
) -> bytes:
    """Derive a 256-bit key from a passphrase.

    ``context`` is mixed into the salt so the same passphrase and random salt
    still produce distinct keys for distinct (owner, key) pairs.
    """
    kdf = PBKDF2HMAC(
        algorithm=SHA256(),
        length=KEY_SIZE,
        salt=salt + context.encode("utf-8"),
        iterations=iterations,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def derive_subkey(root_key: bytes, salt: bytes, context: str) -> bytes:
    """Cheap per-value key from an already-stretched root key (HKDF-SHA256)."""
    hkdf = HKDF(
        algorithm=SHA256(),
        length=KEY_SIZE,
        salt=salt,
        info=context.encode("utf-8"),
    )
    return hkdf.derive(root_key)


def new_salt() -> bytes:
    return os.urandom(SALT_SIZE)


def encrypt(plaintext: bytes, key: bytes) -> EncryptedValue:
    """Encrypt with AES-256-GCM, splitting the trailing tag off the ciphertext."""
    nonce = os.urandom(NONCE_SIZE)
    sealed = AESGCM(key).encrypt(nonce, plaintext, None)
    return EncryptedValue(
        ciphertext=sealed[:-TAG_SIZE], iv=nonce, tag=sealed[-TAG_SIZE:]
    )


def decrypt(ciphertext: bytes, iv: bytes, tag: bytes, key: bytes) -> bytes:
    """Decrypt an AES-256-GCM value.

    Raises:
        cryptography.exceptions.InvalidTag: If authentication fails
            (wrong key, tampered ciphertext, or wrong nonce).
    """
    return AESGCM(key).decrypt(iv, ciphertext + tag, None)


def hash_token(token: str) -> str:
    """SHA-256 hex digest of a raw credential, used as its storage key."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def tokens_match(raw: str, expected_hash: str) -> bool:
    return hmac.compare_digest(hash_token(raw), expected_hash)


def generate_bearer_token() -> str:
    """256-bit hex bearer token."""
    return secrets.token_hex(32)


def generate_numeric_code(length: int = 4) -> str:
    """Short numeric 2FA code; never starts with zero."""
    first = str(secrets.randbelow(9) + 1)
    rest = "".join(str(secrets.randbelow(10)) for _ in range(length - 1))
    return first + rest


def generate_elevation_code() -> str:
    return secrets.token_hex(8)


def fingerprint_hash(fingerprint: dict | str) -> str:
    """Stable digest of a device fingerprint (dict keys are sorted)."""
    if isinstance(fingerprint, dict):
        material = "|".join(f"{k}={fingerprint[k]}" for k in sorted(fingerprint))
    else:
        material = fingerprint
    return hashlib.sha256(material.encode("utf-8")).hexdigest()
