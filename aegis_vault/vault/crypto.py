"""
Vault Crypto Core — Key derivation, verification hashing, AEAD and serialization.

- Vault key: Argon2id(passphrase ":" device_secret, main_salt) → 32 bytes
- Verification hash: PBKDF2-HMAC-SHA256(passphrase, auth_salt, iterations)
- Secrets and attachments: AES-256-GCM, fresh random 96-bit nonce per call
- Key slots: HKDF-SHA256(key-equivalent secret, slot_salt) wraps the vault key

Security Note:
    Never log plaintext, keys, salts, ciphertext or nonces.
"""
import os
import logging
from typing import Any, Optional, Union

import orjson
from argon2.low_level import Type, hash_secret_raw
from argon2.exceptions import HashingError
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..exceptions import DecryptionFailed, ResourceExhausted
from .secure import SecretBytes

logger = logging.getLogger("aegis.vault")

NONCE_SIZE = 12  # 96-bit nonce
TAG_SIZE = 16  # 128-bit GCM tag
KEY_LENGTH = 32  # AES-256
SALT_SIZE = 16
KEY_SEPARATOR = b":"

# Salt used by vaults created before per-vault salts existed.
LEGACY_MAIN_SALT = b"aegis-premium-salt-v4"

KeyLike = Union[bytes, bytearray, SecretBytes]
TextOrBytes = Union[str, bytes, bytearray]


def as_bytes(value: TextOrBytes) -> bytes:
    """Encode text as UTF-8; pass bytes through."""
    if isinstance(value, str):
        return value.encode("utf-8")
    return bytes(value)


def _key_bytes(key: KeyLike) -> bytes:
    if isinstance(key, SecretBytes):
        return key.expose()
    return bytes(key)


def generate_salt(size: int = SALT_SIZE) -> bytes:
    """Generate a cryptographically random salt."""
    return os.urandom(size)


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def derive_vault_key(
    passphrase: TextOrBytes,
    device_secret: TextOrBytes,
    salt: Optional[bytes] = None,
    *,
    memory_kib: int = 65536,
    time_cost: int = 3,
    parallelism: int = 1,
) -> tuple[SecretBytes, bytes]:
    """Derive the 32-byte vault key with Argon2id.

    Deterministic for identical inputs. There is no "wrong input" failure
    here; a wrong passphrase simply yields a different key.

    Args:
        passphrase: Master passphrase.
        device_secret: Locally held secondary secret.
        salt: Main salt; a fresh 16-byte salt is generated when None.
        memory_kib: Argon2 working memory in KiB.
        time_cost: Argon2 passes.
        parallelism: Argon2 lanes.

    Returns:
        Tuple of (key, salt).

    Raises:
        ResourceExhausted: If the working memory could not be allocated.
    """
    if salt is None:
        salt = generate_salt()
    material = bytearray(as_bytes(passphrase) + KEY_SEPARATOR + as_bytes(device_secret))
    try:
        raw = hash_secret_raw(
            secret=bytes(material),
            salt=salt,
            time_cost=time_cost,
            memory_cost=memory_kib,
            parallelism=parallelism,
            hash_len=KEY_LENGTH,
            type=Type.ID,
        )
    except (HashingError, MemoryError) as err:
        logger.error("Key derivation failed (memory=%d KiB): %s", memory_kib, type(err).__name__)
        raise ResourceExhausted(
            "Key derivation could not allocate its working memory",
            metadata={"memory_kib": memory_kib},
        ) from err
    finally:
        material[:] = bytes(len(material))
    return SecretBytes(raw), salt


def hash_passphrase(passphrase: TextOrBytes, salt: bytes, iterations: int) -> bytes:
    """PBKDF2-HMAC-SHA256 verification hash (256 bits).

    Args:
        passphrase: Master passphrase.
        salt: Authentication salt, independent of the main salt.
        iterations: PBKDF2 iteration count.

    Returns:
        32-byte hash.
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(as_bytes(passphrase))


def derive_subkey(seed: bytes, salt: bytes, context: str) -> bytes:
    """Derive a 32-byte wrapping key using HKDF-SHA256.

    Args:
        seed: Input key material (a key-equivalent secret).
        salt: Per-use random salt.
        context: Context string for domain separation (e.g. "vault-key-slot").

    Returns:
        32-byte derived key.
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        info=context.encode("utf-8"),
    )
    return hkdf.derive(seed)


# ---------------------------------------------------------------------------
# Authenticated encryption
# ---------------------------------------------------------------------------

def encrypt(plaintext: bytes, key: KeyLike, associated_data: Optional[bytes] = None) -> tuple[bytes, bytes]:
    """Encrypt with AES-256-GCM under a fresh random nonce.

    Args:
        plaintext: Data to encrypt.
        key: 256-bit key.
        associated_data: Optional data authenticated but not encrypted.

    Returns:
        Tuple of (ciphertext_with_tag, nonce).
    """
    nonce = os.urandom(NONCE_SIZE)
    ct = AESGCM(_key_bytes(key)).encrypt(nonce, plaintext, associated_data)
    return ct, nonce


def decrypt(
    ciphertext: bytes,
    nonce: bytes,
    key: KeyLike,
    associated_data: Optional[bytes] = None,
) -> bytes:
    """Decrypt AES-256-GCM ciphertext; fails closed.

    Raises:
        DecryptionFailed: On tag mismatch or malformed input.
    """
    if len(nonce) != NONCE_SIZE or len(ciphertext) < TAG_SIZE:
        raise DecryptionFailed("Malformed ciphertext or nonce")
    try:
        return AESGCM(_key_bytes(key)).decrypt(nonce, ciphertext, associated_data)
    except InvalidTag as err:
        raise DecryptionFailed("Authentication tag mismatch") from err


# ---------------------------------------------------------------------------
# Value serialization
# ---------------------------------------------------------------------------

def _json_default(value: Any) -> Any:
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    raise TypeError(f"Type is not JSON serializable: {type(value).__name__}")


def serialize_value(value: Any) -> bytes:
    """Serialize a Python value to JSON bytes.

    Sets become sorted lists and bytes become hex strings.

    Returns:
        orjson-encoded bytes.
    """
    return orjson.dumps(value, default=_json_default)


def deserialize_value(data: Union[bytes, str]) -> Any:
    """Deserialize JSON bytes produced by serialize_value."""
    return orjson.loads(data)
