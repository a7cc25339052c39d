"""
RecordCipher — per-record secret and attachment encryption under the session key.

Secrets are stored as lowercase hex text. Records written by older releases
carry base64 text instead and have no version marker, so reads go through
``decode_stored`` which tries both encodings.
"""
import base64
import binascii
import logging
import string
from typing import Optional

from ..data import EncryptedSecret
from ..exceptions import DecryptionFailed
from .crypto import NONCE_SIZE, TAG_SIZE, decrypt, encrypt
from .secure import SecretBytes

logger = logging.getLogger("aegis.vault")

_HEX_DIGITS = frozenset(string.hexdigits)


def _hex_candidate(text: str) -> Optional[bytes]:
    if len(text) % 2 != 0 or not text or not set(text) <= _HEX_DIGITS:
        return None
    return bytes.fromhex(text)


def _base64_candidate(text: str) -> Optional[bytes]:
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError):
        return None


def decode_stored(secret: EncryptedSecret) -> list[tuple[bytes, bytes]]:
    """Return the structurally valid (ciphertext, nonce) decodings of a stored secret.

    Canonical hex comes first, then legacy base64. A pair is structurally
    valid when the nonce is 12 bytes and the ciphertext can hold a GCM tag.
    Structural validity does not prove the encoding: corrupted text can look
    like either one, so the caller must let the AEAD tag decide.

    Transitional: remove the base64 branch once every stored record has been
    rewritten in hex (rotation and import rewrite all records).
    """
    candidates: list[tuple[bytes, bytes]] = []
    for decode in (_hex_candidate, _base64_candidate):
        ct = decode(secret.ciphertext)
        nonce = decode(secret.nonce)
        if ct is None or nonce is None:
            continue
        if len(nonce) != NONCE_SIZE or len(ct) < TAG_SIZE:
            continue
        if (ct, nonce) not in candidates:
            candidates.append((ct, nonce))
    return candidates


class RecordCipher:
    """Authenticated encryption bound to one session key."""

    def __init__(self, key: SecretBytes):
        self._key = key

    @property
    def key(self) -> SecretBytes:
        return self._key

    def encrypt_secret(self, plaintext: str) -> EncryptedSecret:
        """Encrypt a record secret under a fresh nonce, hex-encoded for storage."""
        ct, nonce = encrypt(plaintext.encode("utf-8"), self._key)
        return EncryptedSecret(ciphertext=ct.hex(), nonce=nonce.hex())

    def decrypt_secret(self, secret: EncryptedSecret, record_id: Optional[str] = None) -> str:
        """Decrypt a stored secret in either encoding.

        Raises:
            DecryptionFailed: If no decoding authenticates under the key.
        """
        for ct, nonce in decode_stored(secret):
            try:
                plaintext = decrypt(ct, nonce, self._key)
            except DecryptionFailed:
                continue
            try:
                return plaintext.decode("utf-8")
            except UnicodeDecodeError as err:
                raise DecryptionFailed(
                    "Secret is not valid UTF-8", record_id=record_id
                ) from err
        raise DecryptionFailed(record_id=record_id)

    def encrypt_blob(self, data: bytes) -> tuple[bytes, bytes]:
        """Encrypt attachment bytes. Returns (ciphertext_with_tag, nonce)."""
        return encrypt(data, self._key)

    def decrypt_blob(self, ciphertext: bytes, nonce: bytes, record_id: Optional[str] = None) -> bytes:
        """Decrypt attachment bytes; fails closed."""
        try:
            return decrypt(ciphertext, nonce, self._key)
        except DecryptionFailed as err:
            raise DecryptionFailed(record_id=record_id) from err
