"""MonoKey Vault Meta information.
   MonoKey Vault keeps credentials encrypted under a master key
   that never leaves the client.
"""
__title__ = 'monokey_vault'
__description__ = (
   'Zero-knowledge credential vault engine with remote '
   'and portable local-file backends.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2025 MonoKey Team'
__author__ = 'MonoKey Team'
__license__ = 'Apache-2.0'
