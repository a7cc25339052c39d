"""Shared fixtures for the vault test-suite."""
import pytest

from aegis_vault.data import RecordDraft
from aegis_vault.vault import CredentialVault, VaultConfig

PASSPHRASE = "Tr0ub4dor&3"
DEVICE_SECRET = "dev-abc"


@pytest.fixture
def fast_config():
    """Low-cost KDF settings; production keeps the 64 MiB default."""
    return VaultConfig(kdf_memory_kib=1024, kdf_time_cost=1, auth_iterations=1000)


@pytest.fixture
def vault_path(tmp_path):
    return tmp_path / "vault" / "vault.db"


@pytest.fixture
def vault(vault_path, fast_config):
    """A freshly registered, unlocked vault."""
    v = CredentialVault(vault_path, config=fast_config)
    v.unlock(PASSPHRASE, DEVICE_SECRET)
    yield v
    v.close()


@pytest.fixture
def github_id(vault):
    return vault.create_record(
        RecordDraft(title="Github", username="octo", website="github.com",
                    category="Dev", tags={"work"}, password="token_123")
    )
