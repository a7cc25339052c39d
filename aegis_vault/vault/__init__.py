"""Credential Vault — zero-knowledge storage of credentials and attachments.

Security Note (Threat Model):
    While a session is unlocked the vault key and decrypted secrets live in
    process memory. ``lock()`` overwrites the key buffer, but copies held by
    the crypto backend or by immutable ``str``/``bytes`` values cannot be
    wiped from Python and are reclaimed only by the garbage collector.
    A memory dump of an unlocked process can therefore expose secrets.
    This is an accepted limitation; mitigation requires OS keychain or
    secure enclave integration which is out of scope.
"""

from .credential_vault import CredentialVault, requires_unlocked
from .session import SessionKeyManager, SessionState
from .store import SCHEMA_VERSION, VaultStore
from .lifecycle import LifecycleManager
from .key_rotation import RotationCoordinator
from .breach import BreachChecker, annotate_breaches
from .config import VaultConfig, default_vault_path
from .secure import SecretBytes

__all__ = [
    "CredentialVault",
    "requires_unlocked",
    "SessionKeyManager",
    "SessionState",
    "SCHEMA_VERSION",
    "VaultStore",
    "LifecycleManager",
    "RotationCoordinator",
    "BreachChecker",
    "annotate_breaches",
    "VaultConfig",
    "default_vault_path",
    "SecretBytes",
]
