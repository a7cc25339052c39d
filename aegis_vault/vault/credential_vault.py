"""
CredentialVault — the operation surface a host application drives.

One instance per vault file; there is no module-level singleton. Typical use::

    vault = CredentialVault(path)
    vault.unlock("passphrase", "device-secret")
    rid = vault.create_record(RecordDraft(title="Github", password="token"))
    vault.list_records(query="git")
    vault.lock()

Every record, attachment and rotation operation requires an unlocked
session and raises ``VaultLocked`` otherwise. Operations are synchronous and
serialize on the session guard. Key derivation makes ``unlock`` and
``rotate_passphrase`` slow; hosts should run them off their UI thread.

Security Note:
    Never log plaintext or ciphertext values. Only log record ids,
    counts and state transitions.
"""
import base64
import logging
import functools
from pathlib import Path
from datetime import datetime
from collections.abc import Iterable
from typing import Any, Callable, Optional, TypeVar, Union

from pydantic import ValidationError

from ..data import (
    Attachment,
    ImportReport,
    KeySlot,
    Record,
    RecordDraft,
    RecordFilter,
    RecordView,
    RotationReport,
    WEAK_SECRET_LENGTH,
    secret_strength,
    utcnow,
)
from ..exceptions import (
    AuthenticationFailed,
    DecryptionFailed,
    InvalidExport,
    NotFound,
    StorageFailure,
    VaultCorrupt,
)
from .cipher import RecordCipher
from .config import VaultConfig, default_vault_path
from .crypto import TextOrBytes, deserialize_value, serialize_value
from .key_rotation import RotationCoordinator
from .lifecycle import LifecycleManager
from .secure import SecretBytes
from .session import SessionKeyManager, SessionState
from .store import SCHEMA_VERSION, VaultStore

logger = logging.getLogger("aegis.vault")

EXPORT_FORMAT = "aegis-vault-export"
EXPORT_VERSION = 1

F = TypeVar("F", bound=Callable[..., Any])


def requires_unlocked(func: F) -> F:
    """Hold the session guard and fail with VaultLocked unless unlocked."""
    @functools.wraps(func)
    def wrapper(self: "CredentialVault", *args, **kwargs):
        with self._session.guard:
            self._session.require_unlocked()
            return func(self, *args, **kwargs)
    return wrapper  # type: ignore[return-value]


def _matches_query(record: Record, query: str) -> bool:
    """Case-insensitive subsequence match, ignoring whitespace in the query."""
    needle = "".join(query.lower().split())
    if not needle:
        return True
    haystack = "".join(
        [record.title, record.username, record.website, record.category, *sorted(record.tags)]
    ).lower()
    index = 0
    for char in haystack:
        if char == needle[index]:
            index += 1
            if index == len(needle):
                return True
    return False


class CredentialVault:
    """Zero-knowledge credential vault bound to one database file."""

    def __init__(
        self,
        path: Union[str, Path, None] = None,
        config: Optional[VaultConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config or VaultConfig.from_env()
        self._store = VaultStore(path or default_vault_path())
        self._clock = clock
        self._session = SessionKeyManager(self._store, self.config)
        self._lifecycle = LifecycleManager(self._store, self.config, clock)
        self._rotation = RotationCoordinator(self._session, self._store)

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    @property
    def path(self) -> Path:
        return self._store.path

    @property
    def state(self) -> SessionState:
        return self._session.state

    @property
    def is_unlocked(self) -> bool:
        return self._session.is_unlocked

    def open(self) -> int:
        """Open the store and apply pending schema migrations.

        Returns:
            The schema version found before migrating.
        """
        with self._session.guard:
            self._store.open()
            return self._store.migrate()

    def close(self) -> None:
        """Lock (if unlocked) and release the store."""
        with self._session.guard:
            self._session.lock()
            self._store.close()

    def __enter__(self) -> "CredentialVault":
        self.open()
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def unlock(self, passphrase: TextOrBytes, device_secret: TextOrBytes) -> None:
        """Open a session; registers the passphrase on a brand-new vault.

        Runs the trash auto-purge once the session is open.

        Raises:
            AuthenticationFailed: Wrong passphrase.
            VaultCorrupt: Unreadable metadata or unsupported schema.
        """
        with self._session.guard:
            self._session.unlock(passphrase, device_secret)
            self._lifecycle.auto_purge()

    def unlock_with_key(self, secret: bytes) -> None:
        """Open a session with an enrolled key-equivalent secret."""
        with self._session.guard:
            self._session.unlock_with_key(secret)
            self._lifecycle.auto_purge()

    @requires_unlocked
    def enroll_unlock_key(self, secret: bytes, label: str = "") -> str:
        """Enroll a key-equivalent secret (e.g. a passkey PRF output).

        Returns:
            The new key slot id.
        """
        return self._session.enroll_key_slot(secret, label).id

    @requires_unlocked
    def list_unlock_keys(self) -> list[KeySlot]:
        return self._store.list_key_slots()

    def lock(self) -> None:
        """Wipe key material and close the store. Idempotent."""
        self._session.lock()

    def destroy(self) -> None:
        """Lock and permanently remove the vault file."""
        with self._session.guard:
            self.close()
            for suffix in ("", "-journal", "-wal", "-shm"):
                target = Path(f"{self.path}{suffix}")
                try:
                    target.unlink(missing_ok=True)
                except OSError as err:
                    raise StorageFailure(f"Cannot remove {target}") from err
            logger.warning("Vault destroyed: %s", self.path)

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def _require_record(self, record_id: str) -> Record:
        record = self._store.get_record(record_id)
        if record is None:
            raise NotFound("record", record_id)
        return record

    def _seal(self, record: Record, password: Optional[str]) -> None:
        cipher = self._session.cipher
        record.encrypted_secret = cipher.encrypt_secret(password) if password is not None else None
        record.strength = secret_strength(password)
        record.secret_unrecoverable = False

    def _view(self, record: Record) -> RecordView:
        """Decrypt one record for listing; a failure marks only that record."""
        if record.encrypted_secret is None:
            return RecordView.from_record(record)
        try:
            password = self._session.cipher.decrypt_secret(record.encrypted_secret, record.id)
        except DecryptionFailed:
            logger.error("Decryption failed for record %s", record.id)
            return RecordView.from_record(record, decrypt_failed=True)
        return RecordView.from_record(record, password=password)

    @requires_unlocked
    def create_record(self, draft: Union[RecordDraft, dict]) -> str:
        """Encrypt and store a new record.

        Returns:
            The new record id.
        """
        if isinstance(draft, dict):
            draft = RecordDraft(**draft)
        record = Record(
            title=draft.title or "Untitled",
            username=draft.username,
            website=draft.website,
            category=draft.category,
            tags=set(draft.tags),
            pwned_count=draft.pwned_count,
            updated_at=self._clock(),
        )
        self._seal(record, draft.password)
        self._store.put_record(record)
        logger.debug("Record created: %s", record.id)
        return record.id

    @requires_unlocked
    def update_record(self, record_id: str, draft: Union[RecordDraft, dict]) -> None:
        """Apply the fields set on ``draft``; omitted fields keep their stored values.

        The secret changes only when ``password`` is given.
        """
        if isinstance(draft, dict):
            draft = RecordDraft(**draft)
        record = self._require_record(record_id)
        given = draft.model_fields_set
        if "title" in given and draft.title is not None:
            record.title = draft.title
        for field in ("username", "website", "category", "pwned_count"):
            if field in given:
                setattr(record, field, getattr(draft, field))
        if "tags" in given:
            record.tags = set(draft.tags)
        if draft.password is not None:
            self._seal(record, draft.password)
        record.updated_at = self._clock()
        self._store.put_record(record)
        logger.debug("Record updated: %s", record_id)

    @requires_unlocked
    def get_record(self, record_id: str) -> RecordView:
        """Return one decrypted record.

        Raises:
            NotFound: Unknown id.
            DecryptionFailed: The record's secret does not authenticate.
        """
        record = self._require_record(record_id)
        if record.encrypted_secret is None:
            return RecordView.from_record(record)
        password = self._session.cipher.decrypt_secret(record.encrypted_secret, record.id)
        return RecordView.from_record(record, password=password)

    @requires_unlocked
    def list_records(self, filter: Optional[RecordFilter] = None, **kwargs) -> list[RecordView]:
        """List decrypted records matching ``filter`` (or keyword filter fields).

        Records whose secret fails to decrypt are returned with
        ``password=None`` and ``decrypt_failed=True``.
        """
        flt = filter or RecordFilter(**kwargs)
        views = []
        for record in self._store.list_records(trashed=flt.trashed):
            if flt.category is not None and record.category != flt.category:
                continue
            if flt.tag is not None and flt.tag not in record.tags:
                continue
            if not _matches_query(record, flt.query):
                continue
            views.append(self._view(record))
        return views

    @requires_unlocked
    def bulk_import(self, drafts: Iterable[Union[RecordDraft, dict]]) -> ImportReport:
        """Encrypt and store many drafts in one transaction.

        Drafts without a secret are skipped and counted as missing fields;
        short secrets are flagged as weak.
        """
        report = ImportReport()
        now = self._clock()
        with self._store.transaction():
            for draft in drafts:
                if isinstance(draft, dict):
                    draft = RecordDraft(**draft)
                report.total += 1
                if not draft.title or not draft.password:
                    report.missing_fields += 1
                if not draft.password:
                    continue
                record = Record(
                    title=draft.title or "Imported Entry",
                    username=draft.username,
                    website=draft.website,
                    category=draft.category,
                    tags=set(draft.tags),
                    pwned_count=draft.pwned_count,
                    updated_at=now,
                )
                self._seal(record, draft.password)
                self._store.put_record(record)
                if len(draft.password) < WEAK_SECRET_LENGTH:
                    report.weak += 1
                    report.weak_ids.append(record.id)
        logger.info(
            "Bulk import: %d draft(s), %d weak, %d missing fields",
            report.total, report.weak, report.missing_fields,
        )
        return report

    @requires_unlocked
    def set_breach_count(self, record_id: str, count: int) -> None:
        """Store the informational breach annotation for a record."""
        record = self._require_record(record_id)
        record.pwned_count = max(0, int(count))
        self._store.put_record(record)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @requires_unlocked
    def move_to_trash(self, record_id: str) -> None:
        self._lifecycle.move_to_trash(record_id)

    @requires_unlocked
    def restore(self, record_id: str) -> None:
        self._lifecycle.restore(record_id)

    @requires_unlocked
    def purge(self, record_id: str) -> None:
        self._lifecycle.purge(record_id)

    @requires_unlocked
    def empty_trash(self) -> list[str]:
        return self._lifecycle.empty_trash()

    @requires_unlocked
    def auto_purge(self, now: Optional[datetime] = None) -> list[str]:
        return self._lifecycle.auto_purge(now)

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    @requires_unlocked
    def add_attachment(
        self,
        record_id: str,
        data: bytes,
        name: str,
        mime_type: str = "application/octet-stream",
    ) -> str:
        """Encrypt and attach a blob to a record.

        Raises:
            AttachmentTooLarge: Before any encryption or write happens.
            NotFound: Unknown record id.
        """
        self._lifecycle.admit_attachment(len(data))
        record = self._require_record(record_id)
        ct, nonce = self._session.cipher.encrypt_blob(bytes(data))
        attachment = Attachment(
            record_id=record_id,
            name=name,
            mime_type=mime_type,
            size=len(data),
            nonce=nonce,
            encrypted_bytes=ct,
        )
        record.attachments.append(attachment.ref())
        with self._store.transaction():
            self._store.put_attachment(attachment)
            self._store.put_record(record)
        logger.debug("Attachment %s added to record %s", attachment.id, record_id)
        return attachment.id

    @requires_unlocked
    def read_attachment(self, attachment_id: str) -> bytes:
        attachment = self._store.get_attachment(attachment_id)
        if attachment is None:
            raise NotFound("attachment", attachment_id)
        return self._session.cipher.decrypt_blob(
            attachment.encrypted_bytes, attachment.nonce, attachment.record_id,
        )

    @requires_unlocked
    def remove_attachment(self, attachment_id: str) -> None:
        attachment = self._store.get_attachment(attachment_id)
        if attachment is None:
            raise NotFound("attachment", attachment_id)
        with self._store.transaction():
            self._store.delete_attachment(attachment_id)
            record = self._store.get_record(attachment.record_id)
            if record is not None:
                record.attachments = [
                    ref for ref in record.attachments if ref.id != attachment_id
                ]
                self._store.put_record(record)
        logger.debug("Attachment %s removed", attachment_id)

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    @requires_unlocked
    def rotate_passphrase(
        self,
        old_passphrase: TextOrBytes,
        new_passphrase: TextOrBytes,
        device_secret: TextOrBytes,
    ) -> RotationReport:
        """Change the master passphrase and re-encrypt everything atomically."""
        return self._rotation.rotate(old_passphrase, new_passphrase, device_secret)

    # ------------------------------------------------------------------
    # Encrypted export / import
    # ------------------------------------------------------------------

    @requires_unlocked
    def export_encrypted(self) -> bytes:
        """Dump every record and attachment, still encrypted.

        The bundle carries the main salt but no credential; it is safe to
        hand to a transport.
        """
        metadata = self._store.get_metadata()
        if metadata is None:
            raise VaultCorrupt("Vault metadata is missing")
        bundle = {
            "format": EXPORT_FORMAT,
            "version": EXPORT_VERSION,
            "schema_version": SCHEMA_VERSION,
            "exported_at": utcnow().isoformat(),
            "main_salt": metadata.main_salt.hex(),
            "records": [
                record.model_dump(mode="json") for record in self._store.list_records()
            ],
            "attachments": [
                {
                    "id": att.id,
                    "record_id": att.record_id,
                    "name": att.name,
                    "mime_type": att.mime_type,
                    "size": att.size,
                    "nonce": att.nonce.hex(),
                    "encrypted_bytes": base64.b64encode(att.encrypted_bytes).decode("ascii"),
                }
                for att in self._store.list_attachments()
            ],
        }
        data = serialize_value(bundle)
        logger.info(
            "Exported %d record(s), %d attachment(s)",
            len(bundle["records"]), len(bundle["attachments"]),
        )
        return data

    @staticmethod
    def _parse_export(blob: bytes) -> tuple[bytes, list[Record], list[Attachment]]:
        try:
            bundle = deserialize_value(blob)
            if not isinstance(bundle, dict) or bundle.get("format") != EXPORT_FORMAT:
                raise InvalidExport("Not an encrypted vault export")
            if bundle.get("version") != EXPORT_VERSION:
                raise InvalidExport(
                    f"Unsupported export version {bundle.get('version')!r}"
                )
            salt = bytes.fromhex(bundle["main_salt"])
            records = [Record.model_validate(item) for item in bundle["records"]]
            attachments = [
                Attachment(
                    id=item["id"],
                    record_id=item["record_id"],
                    name=item["name"],
                    mime_type=item["mime_type"],
                    size=item["size"],
                    nonce=bytes.fromhex(item["nonce"]),
                    encrypted_bytes=base64.b64decode(item["encrypted_bytes"], validate=True),
                )
                for item in bundle["attachments"]
            ]
        except InvalidExport:
            raise
        except (KeyError, TypeError, ValueError, ValidationError) as err:
            raise InvalidExport("Malformed encrypted export") from err
        return salt, records, attachments

    @requires_unlocked
    def import_encrypted(
        self,
        blob: bytes,
        passphrase: Optional[TextOrBytes] = None,
        device_secret: Optional[TextOrBytes] = None,
    ) -> int:
        """Import an encrypted export, re-encrypting it under the live key.

        A bundle from this vault (same main salt) opens with the session key;
        a bundle from another vault needs that vault's passphrase and device
        secret. Nothing is written unless every item decrypts.

        Returns:
            Number of records imported.

        Raises:
            InvalidExport: Malformed bundle.
            AuthenticationFailed: Foreign bundle without its credentials.
            DecryptionFailed: Some item does not decrypt; nothing was written.
        """
        salt, records, attachments = self._parse_export(blob)
        metadata = self._store.get_metadata()
        current = self._session.cipher
        source_key: Optional[SecretBytes] = None
        if metadata is not None and salt == metadata.main_salt:
            source = current
        elif passphrase is not None and device_secret is not None:
            source_key = self._session.derive_key(passphrase, device_secret, salt)
            source = RecordCipher(source_key)
        else:
            raise AuthenticationFailed(
                "Export belongs to another vault; its passphrase and device secret are required"
            )

        try:
            secrets: dict[str, str] = {}
            for record in records:
                if record.encrypted_secret is not None:
                    secrets[record.id] = source.decrypt_secret(record.encrypted_secret, record.id)
            record_ids = {record.id for record in records}
            attachments = [att for att in attachments if att.record_id in record_ids]
            blobs = {
                att.id: source.decrypt_blob(att.encrypted_bytes, att.nonce, att.record_id)
                for att in attachments
            }
        finally:
            if source_key is not None:
                source_key.wipe()

        present = {att.id for att in attachments}
        with self._store.transaction():
            for record in records:
                self._store.delete_record(record.id)
                if record.id in secrets:
                    record.encrypted_secret = current.encrypt_secret(secrets[record.id])
                record.attachments = [ref for ref in record.attachments if ref.id in present]
                self._store.put_record(record)
            for att in attachments:
                att.encrypted_bytes, att.nonce = current.encrypt_blob(blobs[att.id])
                self._store.put_attachment(att)
        secrets.clear()
        blobs.clear()
        logger.info("Imported %d record(s), %d attachment(s)", len(records), len(attachments))
        return len(records)
