"""
Aegis Vault error taxonomy.

Every error raised by the engine derives from ``VaultError``. Cryptographic
and authentication failures are always surfaced to the caller; they are
never downgraded to an empty result.
"""
from typing import Any, Optional


class VaultError(Exception):
    """Base exception for all vault errors.

    Attributes:
        message: Human-readable error message (never contains secrets).
        metadata: Additional non-sensitive context (ids, sizes, versions).
    """

    def __init__(self, message: str, metadata: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.metadata = metadata or {}


class AuthenticationFailed(VaultError):
    """Wrong passphrase, wrong key-equivalent secret or unverifiable credential.

    The message is identical for every cause so callers cannot tell a wrong
    passphrase from a damaged verification record.
    """

    def __init__(self, message: str = "Authentication failed", **kwargs):
        super().__init__(message, **kwargs)


class VaultLocked(VaultError):
    """Operation attempted without an open session."""

    def __init__(self, message: str = "Vault is locked", **kwargs):
        super().__init__(message, **kwargs)


class DecryptionFailed(VaultError):
    """Authentication tag or encoding mismatch for a single item."""

    def __init__(self, message: str = "Decryption failed",
                 record_id: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.record_id = record_id
        if record_id is not None:
            self.metadata["record_id"] = record_id


class AttachmentTooLarge(VaultError):
    """Attachment exceeds the configured size cap."""

    def __init__(self, size: int, limit: int, **kwargs):
        super().__init__(
            f"Attachment of {size} bytes exceeds the {limit} byte limit", **kwargs
        )
        self.size = size
        self.limit = limit
        self.metadata.update(size=size, limit=limit)


class NotFound(VaultError):
    """Unknown record, attachment or key slot id."""

    def __init__(self, kind: str, item_id: str, **kwargs):
        super().__init__(f"{kind} {item_id!r} not found", **kwargs)
        self.kind = kind
        self.item_id = item_id
        self.metadata.update(kind=kind, item_id=item_id)


class StorageFailure(VaultError):
    """Underlying persistence I/O error."""


class ResourceExhausted(VaultError):
    """Key derivation could not allocate its working memory."""


class VaultCorrupt(VaultError):
    """Vault metadata is unreadable or written by a newer schema."""


class InvalidExport(VaultError):
    """Encrypted export bundle is malformed."""
