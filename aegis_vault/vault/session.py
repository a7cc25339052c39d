"""
SessionKeyManager — owns the live vault key for one unlocked session.

States: LOCKED → UNLOCKING → UNLOCKED → (lock) → LOCKED.

All record operations, rotation and lock serialize on ``guard`` (a
re-entrant lock), so ``lock()`` called mid-rotation waits until the
rotation has committed or rolled back before wiping key material.
"""
import hmac
import enum
import logging
import threading
from typing import Optional

from ..data import KeySlot, VaultMetadata, new_id
from ..exceptions import (
    AuthenticationFailed,
    DecryptionFailed,
    StorageFailure,
    VaultCorrupt,
    VaultLocked,
)
from .auth import PassphraseAuthenticator
from .cipher import RecordCipher
from .config import VaultConfig
from .crypto import (
    KEY_LENGTH,
    TextOrBytes,
    as_bytes,
    decrypt,
    derive_subkey,
    derive_vault_key,
    encrypt,
    generate_salt,
)
from .secure import SecretBytes
from .store import VaultStore

logger = logging.getLogger("aegis.vault")

KEY_SLOT_CONTEXT = "aegis-vault-key-slot"


class SessionState(str, enum.Enum):
    LOCKED = "locked"
    UNLOCKING = "unlocking"
    UNLOCKED = "unlocked"


class SessionKeyManager:
    """Unlock/lock state machine around a single in-memory vault key."""

    def __init__(self, store: VaultStore, config: VaultConfig):
        self._store = store
        self._config = config
        self.authenticator = PassphraseAuthenticator(config.auth_iterations)
        self.guard = threading.RLock()
        self._state = SessionState.LOCKED
        self._key: Optional[SecretBytes] = None
        self._cipher: Optional[RecordCipher] = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_unlocked(self) -> bool:
        return self._state is SessionState.UNLOCKED

    def require_unlocked(self) -> None:
        """Raises VaultLocked unless a session is open."""
        if self._state is not SessionState.UNLOCKED or self._cipher is None:
            raise VaultLocked()

    @property
    def cipher(self) -> RecordCipher:
        self.require_unlocked()
        return self._cipher

    def derive_key(
        self,
        passphrase: TextOrBytes,
        device_secret: TextOrBytes,
        salt: bytes,
    ) -> SecretBytes:
        """Run the configured memory-hard KDF."""
        key, _ = derive_vault_key(
            passphrase,
            device_secret,
            salt,
            memory_kib=self._config.kdf_memory_kib,
            time_cost=self._config.kdf_time_cost,
            parallelism=self._config.kdf_parallelism,
        )
        return key

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _prepare_store(self) -> VaultMetadata:
        self._store.open()
        self._store.migrate()
        metadata = self._store.get_metadata()
        if metadata is None:
            raise VaultCorrupt("Vault metadata is missing after migration")
        return metadata

    def _probe_existing_records(self, cipher: RecordCipher) -> bool:
        """True if the candidate key opens at least one stored secret, or none exist."""
        secrets = [
            record for record in self._store.list_records()
            if record.encrypted_secret is not None
        ]
        if not secrets:
            return True
        for record in secrets:
            try:
                cipher.decrypt_secret(record.encrypted_secret, record.id)
                return True
            except DecryptionFailed:
                continue
        return False

    def _open_session(self, key: SecretBytes) -> None:
        self._key = key
        self._cipher = RecordCipher(key)
        self._state = SessionState.UNLOCKED

    def _abort_unlock(self, key: Optional[SecretBytes]) -> None:
        if key is not None:
            key.wipe()
        self._state = SessionState.LOCKED
        try:
            self._store.close()
        except StorageFailure as err:
            # the unlock error propagates instead
            logger.error("Closing store after failed unlock: %s", err)

    def unlock(self, passphrase: TextOrBytes, device_secret: TextOrBytes) -> None:
        """Verify the passphrase (or register it on a new vault) and open a session.

        Raises:
            AuthenticationFailed: Wrong passphrase or unverifiable credential.
            VaultCorrupt: Unreadable metadata or unsupported schema.
            StorageFailure: Underlying store error.
            ResourceExhausted: KDF working memory unavailable.
        """
        with self.guard:
            if self._state is SessionState.UNLOCKED:
                self.lock()
            self._state = SessionState.UNLOCKING
            key: Optional[SecretBytes] = None
            try:
                metadata = self._prepare_store()
                registering = metadata.auth_credential is None
                if not registering:
                    self.authenticator.check(passphrase, metadata.auth_credential)
                key = self.derive_key(passphrase, device_secret, metadata.main_salt)
                if registering:
                    if not self._probe_existing_records(RecordCipher(key)):
                        logger.warning("First registration rejected: key opens no stored record")
                        raise AuthenticationFailed()
                    metadata = metadata.model_copy(
                        update={"auth_credential": self.authenticator.register(passphrase)}
                    )
                    self._store.put_metadata(metadata)
                    logger.info("Registered passphrase credential for %s", self._store.path)
            except BaseException:
                self._abort_unlock(key)
                raise
            self._open_session(key)
            logger.info("Vault unlocked: %s", self._store.path)

    def unlock_with_key(self, secret: bytes) -> None:
        """Open a session with a key-equivalent secret enrolled in a key slot.

        Raises:
            AuthenticationFailed: If no enrolled slot opens with ``secret``.
        """
        with self.guard:
            if self._state is SessionState.UNLOCKED:
                self.lock()
            self._state = SessionState.UNLOCKING
            key: Optional[SecretBytes] = None
            try:
                self._prepare_store()
                seed = as_bytes(secret)
                if not seed:
                    raise AuthenticationFailed()
                for slot in self._store.list_key_slots():
                    wrapping = derive_subkey(seed, slot.salt, KEY_SLOT_CONTEXT)
                    try:
                        raw = decrypt(
                            slot.wrapped_key, slot.nonce, wrapping, slot.id.encode("utf-8")
                        )
                    except DecryptionFailed:
                        continue
                    if len(raw) == KEY_LENGTH:
                        key = SecretBytes(raw)
                        break
                if key is None:
                    logger.warning("Key-equivalent unlock failed: no matching slot")
                    raise AuthenticationFailed()
            except BaseException:
                self._abort_unlock(key)
                raise
            self._open_session(key)
            logger.info("Vault unlocked with key slot: %s", self._store.path)

    def enroll_key_slot(self, secret: bytes, label: str = "") -> KeySlot:
        """Wrap the live vault key under ``secret`` and persist the slot."""
        with self.guard:
            self.require_unlocked()
            seed = as_bytes(secret)
            if not seed:
                raise ValueError("Key-equivalent secret cannot be empty")
            salt = generate_salt()
            slot_id = new_id()
            wrapping = derive_subkey(seed, salt, KEY_SLOT_CONTEXT)
            wrapped, nonce = encrypt(self._key.expose(), wrapping, slot_id.encode("utf-8"))
            slot = KeySlot(id=slot_id, label=label, salt=salt, nonce=nonce, wrapped_key=wrapped)
            self._store.put_key_slot(slot)
            logger.info("Enrolled key slot %s", slot.id)
            return slot

    def matches_key(self, candidate: SecretBytes) -> bool:
        """Constant-time comparison of ``candidate`` against the live key."""
        self.require_unlocked()
        return hmac.compare_digest(candidate.expose(), self._key.expose())

    def install_key(self, new_key: SecretBytes) -> None:
        """Swap in a new session key, wiping the retired one.

        Must be called while holding ``guard`` after the new key's data has
        been committed.
        """
        self.require_unlocked()
        old_key = self._key
        self._key = new_key
        self._cipher = RecordCipher(new_key)
        if old_key is not None:
            old_key.wipe()
        logger.info("Session key replaced")

    def lock(self) -> None:
        """Wipe key material, drop the cipher and close the store. Idempotent."""
        with self.guard:
            if self._state is SessionState.LOCKED and self._key is None:
                return
            if self._key is not None:
                self._key.wipe()
            self._key = None
            self._cipher = None
            self._state = SessionState.LOCKED
            self._store.close()
            logger.info("Vault locked: key material wiped")
