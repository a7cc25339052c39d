"""Aegis Vault.

Local-first, zero-knowledge credential vault engine.
"""
from .version import __version__
from .exceptions import (
    VaultError,
    AuthenticationFailed,
    VaultLocked,
    DecryptionFailed,
    AttachmentTooLarge,
    NotFound,
    StorageFailure,
    ResourceExhausted,
    VaultCorrupt,
    InvalidExport,
)
from .data import (
    RecordDraft,
    RecordFilter,
    RecordView,
    ImportReport,
    RotationReport,
)
from .vault import CredentialVault, VaultConfig, SessionState

__all__ = (
    "__version__",
    "CredentialVault",
    "VaultConfig",
    "SessionState",
    "RecordDraft",
    "RecordFilter",
    "RecordView",
    "ImportReport",
    "RotationReport",
    "VaultError",
    "AuthenticationFailed",
    "VaultLocked",
    "DecryptionFailed",
    "AttachmentTooLarge",
    "NotFound",
    "StorageFailure",
    "ResourceExhausted",
    "VaultCorrupt",
    "InvalidExport",
)
