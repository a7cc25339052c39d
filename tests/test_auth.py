"""
Tests for PassphraseAuthenticator.
"""
import pytest

from aegis_vault.exceptions import AuthenticationFailed
from aegis_vault.vault.auth import PassphraseAuthenticator


@pytest.fixture
def authenticator():
    return PassphraseAuthenticator(iterations=1000)


class TestPassphraseAuthenticator:

    def test_register_and_verify(self, authenticator):
        cred = authenticator.register("Tr0ub4dor&3")
        assert cred.iterations == 1000
        assert authenticator.verify("Tr0ub4dor&3", cred)
        assert not authenticator.verify("Tr0ub4dor&4", cred)

    def test_registrations_use_fresh_salts(self, authenticator):
        a = authenticator.register("same")
        b = authenticator.register("same")
        assert a.auth_salt != b.auth_salt
        assert a.verification_hash != b.verification_hash

    def test_missing_credential_is_false(self, authenticator):
        assert authenticator.verify("anything", None) is False

    def test_damaged_credential_is_false(self, authenticator):
        cred = authenticator.register("pass")
        damaged = cred.model_copy(update={"auth_salt": b""})
        assert authenticator.verify("pass", damaged) is False

    def test_check_raises_uniform_error(self, authenticator):
        cred = authenticator.register("pass")
        with pytest.raises(AuthenticationFailed) as wrong:
            authenticator.check("nope", cred)
        with pytest.raises(AuthenticationFailed) as missing:
            authenticator.check("pass", None)
        assert str(wrong.value) == str(missing.value)
