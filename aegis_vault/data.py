"""
Vault data models.

Persistent models (``VaultMetadata``, ``Record``, ``Attachment``) are owned by
``VaultStore`` and only ever hold ciphertext. ``RecordView`` is the decrypted
projection handed to the host while a session is open; it is never persisted.
"""
import uuid
from typing import Optional
from datetime import datetime, timezone

from pydantic import BaseModel, Field, field_validator


WEAK_SECRET_LENGTH = 8


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def secret_strength(secret: Optional[str]) -> int:
    """Display metric: 8 points per character, capped at 100."""
    if not secret:
        return 0
    return min(100, len(secret) * 8)


class AuthCredential(BaseModel):
    """Salted passphrase verification hash, independent of the vault key."""

    verification_hash: bytes
    iterations: int = Field(ge=1)
    auth_salt: bytes


class VaultMetadata(BaseModel):
    """Singleton metadata row of a vault."""

    main_salt: bytes
    schema_version: int = Field(ge=1)
    created_at: datetime = Field(default_factory=utcnow)
    auth_credential: Optional[AuthCredential] = None

    @field_validator("main_salt")
    @classmethod
    def validate_salt(cls, v: bytes) -> bytes:
        if not v:
            raise ValueError("main_salt cannot be empty")
        return v


class EncryptedSecret(BaseModel):
    """Stored ciphertext+tag and nonce, as text (hex, or legacy base64)."""

    ciphertext: str
    nonce: str


class AttachmentRef(BaseModel):
    id: str
    name: str
    mime_type: str = "application/octet-stream"
    size: int = Field(ge=0)


class Record(BaseModel):
    """A stored credential record. Holds no plaintext."""

    id: str = Field(default_factory=new_id)
    title: str = "Untitled"
    username: str = ""
    website: str = ""
    category: str = "General"
    tags: set[str] = Field(default_factory=set)
    strength: int = 0
    pwned_count: int = 0
    updated_at: datetime = Field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None
    encrypted_secret: Optional[EncryptedSecret] = None
    attachments: list[AttachmentRef] = Field(default_factory=list)
    secret_unrecoverable: bool = False

    @property
    def is_trashed(self) -> bool:
        return self.deleted_at is not None


class Attachment(BaseModel):
    """Encrypted attachment blob."""

    id: str = Field(default_factory=new_id)
    record_id: str
    name: str
    mime_type: str = "application/octet-stream"
    size: int = Field(ge=0)
    nonce: bytes
    encrypted_bytes: bytes

    def ref(self) -> AttachmentRef:
        return AttachmentRef(
            id=self.id, name=self.name, mime_type=self.mime_type, size=self.size
        )


class KeySlot(BaseModel):
    """Vault key wrapped under a key-equivalent secret (e.g. a passkey PRF output)."""

    id: str = Field(default_factory=new_id)
    label: str = ""
    salt: bytes
    nonce: bytes
    wrapped_key: bytes
    created_at: datetime = Field(default_factory=utcnow)


class RecordDraft(BaseModel):
    """Plain record input from the host or an importer."""

    title: Optional[str] = None
    username: str = ""
    website: str = ""
    category: str = "General"
    tags: set[str] = Field(default_factory=set)
    password: Optional[str] = None
    pwned_count: int = Field(default=0, ge=0)


class RecordView(BaseModel):
    """Decrypted projection of a record.

    ``password`` is None when the record has no secret or when decryption
    failed; ``decrypt_failed`` tells the two apart.
    """

    id: str
    title: str
    username: str
    website: str
    category: str
    tags: set[str]
    strength: int
    pwned_count: int
    updated_at: datetime
    deleted_at: Optional[datetime] = None
    attachments: list[AttachmentRef] = Field(default_factory=list)
    password: Optional[str] = None
    decrypt_failed: bool = False
    secret_unrecoverable: bool = False

    @classmethod
    def from_record(
        cls,
        record: Record,
        password: Optional[str] = None,
        decrypt_failed: bool = False,
    ) -> "RecordView":
        return cls(
            id=record.id,
            title=record.title,
            username=record.username,
            website=record.website,
            category=record.category,
            tags=set(record.tags),
            strength=record.strength,
            pwned_count=record.pwned_count,
            updated_at=record.updated_at,
            deleted_at=record.deleted_at,
            attachments=list(record.attachments),
            password=password,
            decrypt_failed=decrypt_failed,
            secret_unrecoverable=record.secret_unrecoverable,
        )


class RecordFilter(BaseModel):
    """Listing filter.

    ``query`` is matched as a case-insensitive, whitespace-insensitive
    subsequence over title, username, website, category and tags.
    """

    query: str = ""
    category: Optional[str] = None
    tag: Optional[str] = None
    trashed: bool = False


class ImportReport(BaseModel):
    total: int = 0
    weak: int = 0
    missing_fields: int = 0
    weak_ids: list[str] = Field(default_factory=list)


class RotationReport(BaseModel):
    records_rotated: int = 0
    attachments_rotated: int = 0
    failed_record_ids: list[str] = Field(default_factory=list)
    failed_attachment_ids: list[str] = Field(default_factory=list)
    slots_revoked: int = 0
