"""
Tests for VaultConfig validation and environment overrides.
"""
from pathlib import Path

import pytest
from pydantic import ValidationError

from aegis_vault.vault.config import MAX_ATTACHMENT_BYTES, VaultConfig, default_vault_path


class TestVaultConfig:

    def test_defaults(self):
        config = VaultConfig()
        assert config.kdf_memory_kib == 65536
        assert config.kdf_time_cost == 3
        assert config.kdf_parallelism == 1
        assert config.trash_retention_days == 30
        assert config.max_attachment_bytes == MAX_ATTACHMENT_BYTES

    def test_attachment_cap_cannot_be_raised(self):
        with pytest.raises(ValidationError):
            VaultConfig(max_attachment_bytes=MAX_ATTACHMENT_BYTES + 1)

    def test_memory_per_lane(self):
        with pytest.raises(ValidationError):
            VaultConfig(kdf_memory_kib=16, kdf_parallelism=4)

    def test_frozen(self):
        config = VaultConfig()
        with pytest.raises(ValidationError):
            config.kdf_time_cost = 1

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("AEGIS_VAULT_KDF_MEMORY_KIB", "2048")
        monkeypatch.setenv("AEGIS_VAULT_TRASH_RETENTION_DAYS", "7")
        config = VaultConfig.from_env()
        assert config.kdf_memory_kib == 2048
        assert config.trash_retention_days == 7
        assert config.kdf_time_cost == 3

    def test_from_env_invalid(self, monkeypatch):
        monkeypatch.setenv("AEGIS_VAULT_KDF_TIME_COST", "0")
        with pytest.raises(ValidationError):
            VaultConfig.from_env()


class TestVaultPath:

    def test_env_override(self, monkeypatch, tmp_path):
        monkeypatch.setenv("AEGIS_VAULT_PATH", str(tmp_path / "x.db"))
        assert default_vault_path() == tmp_path / "x.db"

    def test_default_location(self, monkeypatch):
        monkeypatch.delenv("AEGIS_VAULT_PATH", raising=False)
        path = default_vault_path()
        assert path.name == "vault.db"
        assert path.parent == Path.home() / ".aegis_vault"
