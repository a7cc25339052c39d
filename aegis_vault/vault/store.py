"""
VaultStore — persistent store of encrypted records, attachments and metadata.

Backed by a single sqlite database owned exclusively by the engine. The
store never sees plaintext or keys; it only moves ciphertext and metadata.

Schema versions:
    1  legacy ``records`` table, base64 ciphertext, fixed-string salt
    2  ``vault_metadata`` singleton row
    3  ``attachments`` table and ``records.attachments`` refs
    4  ``key_slots`` table and ``records.secret_unrecoverable`` flag
"""
import sqlite3
import logging
import functools
from pathlib import Path
from contextlib import contextmanager
from datetime import datetime, timezone
from collections.abc import Iterator
from typing import Any, Callable, Optional, TypeVar, Union

from pydantic import ValidationError

from ..data import (
    Attachment,
    AttachmentRef,
    AuthCredential,
    EncryptedSecret,
    KeySlot,
    Record,
    VaultMetadata,
    utcnow,
)
from ..exceptions import StorageFailure, VaultCorrupt
from .crypto import LEGACY_MAIN_SALT, deserialize_value, generate_salt, serialize_value

logger = logging.getLogger("aegis.vault")

SCHEMA_VERSION = 4

F = TypeVar("F", bound=Callable[..., Any])

# ---------------------------------------------------------------------------
# SQL statements
# ---------------------------------------------------------------------------

_CREATE_RECORDS = """
CREATE TABLE IF NOT EXISTS records (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL DEFAULT 'Untitled',
    username TEXT NOT NULL DEFAULT '',
    website TEXT NOT NULL DEFAULT '',
    category TEXT NOT NULL DEFAULT 'General',
    tags TEXT NOT NULL DEFAULT '[]',
    strength INTEGER NOT NULL DEFAULT 0,
    pwned_count INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL,
    deleted_at TEXT,
    encrypted_secret TEXT,
    nonce TEXT
)
"""

_CREATE_METADATA = """
CREATE TABLE IF NOT EXISTS vault_metadata (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    main_salt BLOB NOT NULL,
    schema_version INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    verification_hash BLOB,
    auth_iterations INTEGER,
    auth_salt BLOB
)
"""

_CREATE_ATTACHMENTS = """
CREATE TABLE IF NOT EXISTS attachments (
    id TEXT PRIMARY KEY,
    record_id TEXT NOT NULL REFERENCES records (id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    mime_type TEXT NOT NULL,
    size INTEGER NOT NULL,
    nonce BLOB NOT NULL,
    encrypted_bytes BLOB NOT NULL
)
"""

_CREATE_KEY_SLOTS = """
CREATE TABLE IF NOT EXISTS key_slots (
    id TEXT PRIMARY KEY,
    label TEXT NOT NULL DEFAULT '',
    salt BLOB NOT NULL,
    nonce BLOB NOT NULL,
    wrapped_key BLOB NOT NULL,
    created_at TEXT NOT NULL
)
"""

_UPSERT_METADATA = """
INSERT INTO vault_metadata
    (id, main_salt, schema_version, created_at, verification_hash, auth_iterations, auth_salt)
VALUES (1, ?, ?, ?, ?, ?, ?)
ON CONFLICT (id) DO UPDATE SET
    main_salt = excluded.main_salt,
    schema_version = excluded.schema_version,
    created_at = excluded.created_at,
    verification_hash = excluded.verification_hash,
    auth_iterations = excluded.auth_iterations,
    auth_salt = excluded.auth_salt
"""

_SELECT_METADATA = """
SELECT main_salt, schema_version, created_at, verification_hash, auth_iterations, auth_salt
FROM vault_metadata WHERE id = 1
"""

_RECORD_COLUMNS = (
    "id, title, username, website, category, tags, strength, pwned_count, "
    "updated_at, deleted_at, encrypted_secret, nonce, attachments, secret_unrecoverable"
)

# Updates in place; a REPLACE would delete the row and cascade to its attachments.
_UPSERT_RECORD = f"""
INSERT INTO records ({_RECORD_COLUMNS})
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT (id) DO UPDATE SET
    title = excluded.title,
    username = excluded.username,
    website = excluded.website,
    category = excluded.category,
    tags = excluded.tags,
    strength = excluded.strength,
    pwned_count = excluded.pwned_count,
    updated_at = excluded.updated_at,
    deleted_at = excluded.deleted_at,
    encrypted_secret = excluded.encrypted_secret,
    nonce = excluded.nonce,
    attachments = excluded.attachments,
    secret_unrecoverable = excluded.secret_unrecoverable
"""

_ATTACHMENT_COLUMNS = "id, record_id, name, mime_type, size, nonce, encrypted_bytes"

_UPSERT_ATTACHMENT = f"""
INSERT OR REPLACE INTO attachments ({_ATTACHMENT_COLUMNS})
VALUES (?, ?, ?, ?, ?, ?, ?)
"""

_UPSERT_KEY_SLOT = """
INSERT OR REPLACE INTO key_slots (id, label, salt, nonce, wrapped_key, created_at)
VALUES (?, ?, ?, ?, ?, ?)
"""


def _storage_op(func: F) -> F:
    """Surface sqlite errors as StorageFailure."""
    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        if self._conn is None:
            raise StorageFailure("Vault store is not open")
        try:
            return func(self, *args, **kwargs)
        except sqlite3.Error as err:
            logger.error("Storage operation %s failed: %s", func.__name__, err)
            raise StorageFailure(f"Storage operation {func.__name__} failed") from err
    return wrapper  # type: ignore[return-value]


def _to_text(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


def _from_text(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class VaultStore:
    """sqlite-backed store for one vault file."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._conn: Optional[sqlite3.Connection] = None
        self._tx_depth = 0

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def open(self) -> None:
        """Open the database file, creating parent directories. Idempotent."""
        if self._conn is not None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                str(self.path), isolation_level=None, check_same_thread=False,
            )
            conn.execute("PRAGMA foreign_keys = ON")
        except (OSError, sqlite3.Error) as err:
            raise StorageFailure(f"Cannot open vault store at {self.path}") from err
        self._conn = conn
        logger.debug("Vault store opened: %s", self.path)

    def close(self) -> None:
        """Close the connection. Idempotent."""
        if self._conn is None:
            return
        try:
            self._conn.close()
        except sqlite3.Error as err:
            raise StorageFailure("Cannot close vault store") from err
        finally:
            self._conn = None
            self._tx_depth = 0
        logger.debug("Vault store closed: %s", self.path)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """All writes inside commit together or not at all. Nests."""
        if self._conn is None:
            raise StorageFailure("Vault store is not open")
        if self._tx_depth:
            self._tx_depth += 1
            try:
                yield
            finally:
                self._tx_depth -= 1
            return
        try:
            self._conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as err:
            raise StorageFailure("Cannot begin transaction") from err
        self._tx_depth = 1
        try:
            yield
        except BaseException:
            self._tx_depth = 0
            try:
                self._conn.execute("ROLLBACK")
            except sqlite3.Error as err:
                logger.error("Rollback failed: %s", err)
            raise
        self._tx_depth = 0
        try:
            self._conn.execute("COMMIT")
        except sqlite3.Error as err:
            if self._conn.in_transaction:
                self._conn.execute("ROLLBACK")
            raise StorageFailure("Commit failed") from err

    # ------------------------------------------------------------------
    # Schema migration
    # ------------------------------------------------------------------

    def _tables(self) -> set[str]:
        rows = self._conn.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table'"
        ).fetchall()
        return {row[0] for row in rows}

    def _columns(self, table: str) -> set[str]:
        return {row[1] for row in self._conn.execute(f"PRAGMA table_info({table})")}

    def _stored_version(self) -> int:
        tables = self._tables()
        if "vault_metadata" in tables:
            row = self._conn.execute(
                "SELECT schema_version FROM vault_metadata WHERE id = 1"
            ).fetchone()
            if row is not None:
                return int(row[0])
        if "records" in tables:
            return 1
        return 0

    @_storage_op
    def schema_version(self) -> int:
        return self._stored_version()

    @_storage_op
    def migrate(self) -> int:
        """Apply every pending schema step in one transaction.

        Returns:
            The schema version the vault was at before migrating.

        Raises:
            VaultCorrupt: If the vault was written by a newer schema.
        """
        with self.transaction():
            version = self._stored_version()
            if version > SCHEMA_VERSION:
                raise VaultCorrupt(
                    f"Vault schema version {version} is newer than supported "
                    f"version {SCHEMA_VERSION}",
                    metadata={"schema_version": version},
                )
            if version == SCHEMA_VERSION:
                return version
            if version < 1:
                self._conn.execute(_CREATE_RECORDS)
                self._conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_records_category ON records (category)"
                )
            if version < 2:
                self._migrate_metadata()
            if version < 3:
                self._conn.execute(_CREATE_ATTACHMENTS)
                self._conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_attachments_record_id "
                    "ON attachments (record_id)"
                )
                if "attachments" not in self._columns("records"):
                    self._conn.execute(
                        "ALTER TABLE records ADD COLUMN attachments TEXT NOT NULL DEFAULT '[]'"
                    )
            if version < 4:
                self._conn.execute(_CREATE_KEY_SLOTS)
                if "secret_unrecoverable" not in self._columns("records"):
                    self._conn.execute(
                        "ALTER TABLE records ADD COLUMN secret_unrecoverable "
                        "INTEGER NOT NULL DEFAULT 0"
                    )
            self._conn.execute(
                "UPDATE vault_metadata SET schema_version = ? WHERE id = 1",
                (SCHEMA_VERSION,),
            )
        logger.info("Vault schema migrated from v%d to v%d", version, SCHEMA_VERSION)
        return version

    def _migrate_metadata(self) -> None:
        self._conn.execute(_CREATE_METADATA)
        if self._conn.execute("SELECT 1 FROM vault_metadata WHERE id = 1").fetchone():
            return
        count = self._conn.execute("SELECT COUNT(*) FROM records").fetchone()[0]
        if count:
            # Pre-existing records were encrypted under the fixed-string salt.
            salt = LEGACY_MAIN_SALT
            logger.info("Synthesizing metadata for legacy vault with %d record(s)", count)
        else:
            salt = generate_salt()
        self._conn.execute(
            "INSERT INTO vault_metadata (id, main_salt, schema_version, created_at) "
            "VALUES (1, ?, ?, ?)",
            (salt, 2, utcnow().isoformat()),
        )

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    @_storage_op
    def get_metadata(self) -> Optional[VaultMetadata]:
        """Return the metadata row, or None for an unmigrated vault.

        Raises:
            VaultCorrupt: If the stored row cannot be parsed.
        """
        if "vault_metadata" not in self._tables():
            return None
        row = self._conn.execute(_SELECT_METADATA).fetchone()
        if row is None:
            return None
        main_salt, schema_version, created_at, vhash, iterations, auth_salt = row
        try:
            credential = None
            if vhash is not None:
                credential = AuthCredential(
                    verification_hash=bytes(vhash),
                    iterations=iterations,
                    auth_salt=bytes(auth_salt),
                )
            return VaultMetadata(
                main_salt=bytes(main_salt),
                schema_version=schema_version,
                created_at=_from_text(created_at),
                auth_credential=credential,
            )
        except (ValidationError, TypeError, ValueError) as err:
            raise VaultCorrupt("Vault metadata is unreadable") from err

    @_storage_op
    def put_metadata(self, metadata: VaultMetadata) -> None:
        cred = metadata.auth_credential
        self._conn.execute(
            _UPSERT_METADATA,
            (
                metadata.main_salt,
                metadata.schema_version,
                _to_text(metadata.created_at),
                cred.verification_hash if cred else None,
                cred.iterations if cred else None,
                cred.auth_salt if cred else None,
            ),
        )

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    @staticmethod
    def _record_from_row(row: tuple) -> Record:
        (rid, title, username, website, category, tags, strength, pwned,
         updated_at, deleted_at, ciphertext, nonce, attachments, unrecoverable) = row
        try:
            secret = None
            if ciphertext and nonce:
                secret = EncryptedSecret(ciphertext=ciphertext, nonce=nonce)
            return Record(
                id=str(rid),
                title=title or "Untitled",
                username=username or "",
                website=website or "",
                category=category or "General",
                tags=set(deserialize_value(tags or "[]")),
                strength=strength or 0,
                pwned_count=pwned or 0,
                updated_at=_from_text(updated_at) or utcnow(),
                deleted_at=_from_text(deleted_at),
                encrypted_secret=secret,
                attachments=[
                    AttachmentRef(**ref) for ref in deserialize_value(attachments or "[]")
                ],
                secret_unrecoverable=bool(unrecoverable),
            )
        except (ValidationError, TypeError, ValueError) as err:
            raise VaultCorrupt(
                f"Record {rid!r} is unreadable", metadata={"record_id": str(rid)}
            ) from err

    @_storage_op
    def count_records(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM records").fetchone()[0]

    @_storage_op
    def get_record(self, record_id: str) -> Optional[Record]:
        row = self._conn.execute(
            f"SELECT {_RECORD_COLUMNS} FROM records WHERE id = ?", (record_id,)
        ).fetchone()
        return self._record_from_row(row) if row else None

    @_storage_op
    def list_records(self, trashed: Optional[bool] = None) -> list[Record]:
        """List records; ``trashed`` selects the trash or active partition, None both."""
        sql = f"SELECT {_RECORD_COLUMNS} FROM records"
        if trashed is True:
            sql += " WHERE deleted_at IS NOT NULL"
        elif trashed is False:
            sql += " WHERE deleted_at IS NULL"
        sql += " ORDER BY title COLLATE NOCASE, id"
        return [self._record_from_row(row) for row in self._conn.execute(sql)]

    @_storage_op
    def put_record(self, record: Record) -> None:
        secret = record.encrypted_secret
        self._conn.execute(
            _UPSERT_RECORD,
            (
                record.id,
                record.title,
                record.username,
                record.website,
                record.category,
                serialize_value(sorted(record.tags)).decode("utf-8"),
                record.strength,
                record.pwned_count,
                _to_text(record.updated_at),
                _to_text(record.deleted_at),
                secret.ciphertext if secret else None,
                secret.nonce if secret else None,
                serialize_value(
                    [ref.model_dump() for ref in record.attachments]
                ).decode("utf-8"),
                int(record.secret_unrecoverable),
            ),
        )

    @_storage_op
    def delete_record(self, record_id: str) -> bool:
        """Delete a record and every attachment it owns."""
        with self.transaction():
            self._conn.execute("DELETE FROM attachments WHERE record_id = ?", (record_id,))
            cur = self._conn.execute("DELETE FROM records WHERE id = ?", (record_id,))
        return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    @staticmethod
    def _attachment_from_row(row: tuple) -> Attachment:
        aid, record_id, name, mime_type, size, nonce, data = row
        return Attachment(
            id=aid,
            record_id=record_id,
            name=name,
            mime_type=mime_type,
            size=size,
            nonce=bytes(nonce),
            encrypted_bytes=bytes(data),
        )

    @_storage_op
    def get_attachment(self, attachment_id: str) -> Optional[Attachment]:
        row = self._conn.execute(
            f"SELECT {_ATTACHMENT_COLUMNS} FROM attachments WHERE id = ?",
            (attachment_id,),
        ).fetchone()
        return self._attachment_from_row(row) if row else None

    @_storage_op
    def list_attachments(self, record_id: Optional[str] = None) -> list[Attachment]:
        if record_id is None:
            cur = self._conn.execute(
                f"SELECT {_ATTACHMENT_COLUMNS} FROM attachments ORDER BY record_id, id"
            )
        else:
            cur = self._conn.execute(
                f"SELECT {_ATTACHMENT_COLUMNS} FROM attachments WHERE record_id = ? ORDER BY id",
                (record_id,),
            )
        return [self._attachment_from_row(row) for row in cur]

    @_storage_op
    def put_attachment(self, attachment: Attachment) -> None:
        self._conn.execute(
            _UPSERT_ATTACHMENT,
            (
                attachment.id,
                attachment.record_id,
                attachment.name,
                attachment.mime_type,
                attachment.size,
                attachment.nonce,
                attachment.encrypted_bytes,
            ),
        )

    @_storage_op
    def delete_attachment(self, attachment_id: str) -> bool:
        cur = self._conn.execute("DELETE FROM attachments WHERE id = ?", (attachment_id,))
        return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Key slots
    # ------------------------------------------------------------------

    @_storage_op
    def list_key_slots(self) -> list[KeySlot]:
        rows = self._conn.execute(
            "SELECT id, label, salt, nonce, wrapped_key, created_at FROM key_slots "
            "ORDER BY created_at"
        ).fetchall()
        return [
            KeySlot(
                id=sid,
                label=label,
                salt=bytes(salt),
                nonce=bytes(nonce),
                wrapped_key=bytes(wrapped),
                created_at=_from_text(created_at),
            )
            for sid, label, salt, nonce, wrapped, created_at in rows
        ]

    @_storage_op
    def put_key_slot(self, slot: KeySlot) -> None:
        self._conn.execute(
            _UPSERT_KEY_SLOT,
            (slot.id, slot.label, slot.salt, slot.nonce, slot.wrapped_key,
             _to_text(slot.created_at)),
        )

    @_storage_op
    def delete_key_slots(self) -> int:
        return self._conn.execute("DELETE FROM key_slots").rowcount
