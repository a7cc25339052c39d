"""
Vault Configuration — Key-derivation cost, retention and size limits.

Reads optional overrides from environment variables:
    AEGIS_VAULT_KDF_MEMORY_KIB = <int>   (default 65536, i.e. 64 MiB)
    AEGIS_VAULT_KDF_TIME_COST = <int>    (default 3 passes)
    AEGIS_VAULT_KDF_PARALLELISM = <int>  (default 1 lane)
    AEGIS_VAULT_AUTH_ITERATIONS = <int>  (default 100000)
    AEGIS_VAULT_TRASH_RETENTION_DAYS = <int> (default 30)
    AEGIS_VAULT_MAX_ATTACHMENT_BYTES = <int> (default 50 MiB)
    AEGIS_VAULT_PATH = <path to vault database>

Security Note:
    Lowering the KDF cost weakens brute-force resistance. Only tests should
    override the defaults.
"""
import os
import logging
from pathlib import Path

from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger("aegis.vault")

MAX_ATTACHMENT_BYTES = 50 * 1024 * 1024

_ENV_FIELDS = {
    "kdf_memory_kib": "AEGIS_VAULT_KDF_MEMORY_KIB",
    "kdf_time_cost": "AEGIS_VAULT_KDF_TIME_COST",
    "kdf_parallelism": "AEGIS_VAULT_KDF_PARALLELISM",
    "auth_iterations": "AEGIS_VAULT_AUTH_ITERATIONS",
    "trash_retention_days": "AEGIS_VAULT_TRASH_RETENTION_DAYS",
    "max_attachment_bytes": "AEGIS_VAULT_MAX_ATTACHMENT_BYTES",
}


def default_vault_path() -> Path:
    """Return the vault database path from AEGIS_VAULT_PATH or the default.

    Returns:
        Path to the vault database file.
    """
    raw = os.environ.get("AEGIS_VAULT_PATH")
    if raw:
        return Path(raw).expanduser()
    return Path.home() / ".aegis_vault" / "vault.db"


class VaultConfig(BaseModel):
    """Validated vault configuration."""

    kdf_memory_kib: int = Field(default=65536, ge=8)
    kdf_time_cost: int = Field(default=3, ge=1)
    kdf_parallelism: int = Field(default=1, ge=1, le=16)
    auth_iterations: int = Field(default=100_000, ge=1)
    trash_retention_days: int = Field(default=30, ge=1)
    max_attachment_bytes: int = Field(
        default=MAX_ATTACHMENT_BYTES, ge=1, le=MAX_ATTACHMENT_BYTES
    )

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def validate_kdf_memory(self) -> "VaultConfig":
        """Argon2 needs at least 8 KiB of memory per lane."""
        if self.kdf_memory_kib < 8 * self.kdf_parallelism:
            raise ValueError(
                f"kdf_memory_kib must be at least {8 * self.kdf_parallelism} "
                f"for {self.kdf_parallelism} lane(s)"
            )
        return self

    @classmethod
    def from_env(cls) -> "VaultConfig":
        """Create VaultConfig from AEGIS_VAULT_* environment overrides.

        Returns:
            Populated VaultConfig instance.
        """
        values: dict[str, int] = {}
        for field_name, env_name in _ENV_FIELDS.items():
            raw = os.environ.get(env_name)
            if raw is not None:
                values[field_name] = int(raw)
        if values:
            logger.debug("Vault config overrides: %s", sorted(values))
        return cls(**values)
