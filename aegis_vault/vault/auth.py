"""
Passphrase verification, independent of the vault key.

A wrong passphrase is rejected here, before any record decryption is
attempted. Verification failures never say why they failed.
"""
import hmac
import logging
from typing import Optional

from ..data import AuthCredential
from ..exceptions import AuthenticationFailed
from .crypto import TextOrBytes, generate_salt, hash_passphrase

logger = logging.getLogger("aegis.vault")


class PassphraseAuthenticator:
    """Registers and verifies salted PBKDF2 verification hashes."""

    def __init__(self, iterations: int = 100_000):
        self.iterations = iterations

    def register(self, passphrase: TextOrBytes) -> AuthCredential:
        """Create a fresh verification record for ``passphrase``."""
        auth_salt = generate_salt()
        return AuthCredential(
            verification_hash=hash_passphrase(passphrase, auth_salt, self.iterations),
            iterations=self.iterations,
            auth_salt=auth_salt,
        )

    def verify(self, passphrase: TextOrBytes, stored: Optional[AuthCredential]) -> bool:
        """Recompute and compare in constant time.

        A missing or damaged credential verifies as False, the same as a
        wrong passphrase.
        """
        if stored is None or not stored.auth_salt or stored.iterations < 1:
            return False
        try:
            computed = hash_passphrase(passphrase, stored.auth_salt, stored.iterations)
        except (TypeError, ValueError):
            return False
        return hmac.compare_digest(computed, stored.verification_hash)

    def check(self, passphrase: TextOrBytes, stored: Optional[AuthCredential]) -> None:
        """Verify or raise.

        Raises:
            AuthenticationFailed: For a wrong passphrase or unverifiable record.
        """
        if not self.verify(passphrase, stored):
            logger.warning("Passphrase verification failed")
            raise AuthenticationFailed()
