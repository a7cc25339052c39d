"""Aegis Vault Meta information.
   Aegis Vault is a local-first, zero-knowledge credential vault engine.
"""
__title__ = 'aegis_vault'
__description__ = (
   'Aegis Vault stores credentials, notes and attachments '
   'encrypted at rest under a passphrase-derived key.'
)
__version__ = '0.4.0'
__copyright__ = 'Copyright (c) 2026 Aegis Vault Authors'
__author__ = 'Aegis Vault Authors'
__author_email__ = 'dev@aegis-vault.invalid'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/aegis-vault/aegis-vault'
