"""
Vault Key Rotation — Re-encrypt the whole corpus under a new passphrase.

Rotation runs as one unit of work while holding the session guard, so no
record write or lock can interleave. Everything is decrypted under the
current key, re-encrypted under a key derived from a fresh main salt, and
written in a single transaction together with the new metadata. The session
key is swapped only after that transaction commits; on any failure the vault
keeps its old key and old metadata.

Security Note:
    Plaintext exists in memory only during re-encryption.
    Never log plaintext or ciphertext values.
"""
import logging

from ..data import RotationReport, VaultMetadata, utcnow
from ..exceptions import AuthenticationFailed, DecryptionFailed, VaultCorrupt
from .cipher import RecordCipher
from .crypto import TextOrBytes, generate_salt
from .session import SessionKeyManager
from .store import SCHEMA_VERSION, VaultStore

logger = logging.getLogger("aegis.vault")


class RotationCoordinator:
    """Drives KeyDerivation, RecordCipher and VaultStore through a passphrase change."""

    def __init__(self, session: SessionKeyManager, store: VaultStore):
        self._session = session
        self._store = store

    def rotate(
        self,
        old_passphrase: TextOrBytes,
        new_passphrase: TextOrBytes,
        device_secret: TextOrBytes,
    ) -> RotationReport:
        """Change the master passphrase and re-key every record and attachment.

        Records whose secret no longer decrypts are rewritten with the secret
        cleared and ``secret_unrecoverable`` set; undecryptable attachments
        are removed. Key slots wrap the retired key and are revoked.

        Raises:
            VaultLocked: If no session is open.
            AuthenticationFailed: If ``old_passphrase`` (with ``device_secret``)
                does not match the open session.
        """
        session = self._session
        with session.guard:
            current = session.cipher
            metadata = self._store.get_metadata()
            if metadata is None:
                raise VaultCorrupt("Vault metadata is missing")
            session.authenticator.check(old_passphrase, metadata.auth_credential)

            with session.derive_key(old_passphrase, device_secret, metadata.main_salt) as probe:
                if not session.matches_key(probe):
                    logger.warning("Rotation rejected: device secret does not match session key")
                    raise AuthenticationFailed()

            report = RotationReport()
            records = self._store.list_records()
            secrets: dict[str, str] = {}
            for record in records:
                if record.encrypted_secret is None:
                    continue
                try:
                    secrets[record.id] = current.decrypt_secret(record.encrypted_secret, record.id)
                except DecryptionFailed:
                    logger.error("Rotation: secret of record %s does not decrypt", record.id)
                    report.failed_record_ids.append(record.id)

            blobs: dict[str, bytes] = {}
            attachments = self._store.list_attachments()
            for attachment in attachments:
                try:
                    blobs[attachment.id] = current.decrypt_blob(
                        attachment.encrypted_bytes, attachment.nonce, attachment.record_id,
                    )
                except DecryptionFailed:
                    logger.error("Rotation: attachment %s does not decrypt", attachment.id)
                    report.failed_attachment_ids.append(attachment.id)

            new_salt = generate_salt()
            new_key = session.derive_key(new_passphrase, device_secret, new_salt)
            try:
                fresh = RecordCipher(new_key)
                new_metadata = VaultMetadata(
                    main_salt=new_salt,
                    schema_version=max(metadata.schema_version, SCHEMA_VERSION),
                    created_at=metadata.created_at,
                    auth_credential=session.authenticator.register(new_passphrase),
                )
                failed_attachments = set(report.failed_attachment_ids)
                now = utcnow()
                with self._store.transaction():
                    self._store.put_metadata(new_metadata)
                    for record in records:
                        if record.id in secrets:
                            record.encrypted_secret = fresh.encrypt_secret(secrets[record.id])
                            report.records_rotated += 1
                        elif record.id in report.failed_record_ids:
                            record.encrypted_secret = None
                            record.secret_unrecoverable = True
                        if failed_attachments:
                            record.attachments = [
                                ref for ref in record.attachments
                                if ref.id not in failed_attachments
                            ]
                        record.updated_at = now
                        self._store.put_record(record)
                    for attachment in attachments:
                        if attachment.id in failed_attachments:
                            self._store.delete_attachment(attachment.id)
                            continue
                        ct, nonce = fresh.encrypt_blob(blobs[attachment.id])
                        attachment.encrypted_bytes = ct
                        attachment.nonce = nonce
                        self._store.put_attachment(attachment)
                        report.attachments_rotated += 1
                    report.slots_revoked = self._store.delete_key_slots()
            except BaseException:
                new_key.wipe()
                logger.error("Rotation aborted; vault keeps its previous key")
                raise
            finally:
                secrets.clear()
                blobs.clear()

            session.install_key(new_key)
            logger.info(
                "Rotation complete: %d record(s), %d attachment(s), %d failure(s), %d slot(s) revoked",
                report.records_rotated,
                report.attachments_rotated,
                len(report.failed_record_ids) + len(report.failed_attachment_ids),
                report.slots_revoked,
            )
            return report
