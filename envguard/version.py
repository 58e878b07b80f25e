"""EnvGuard Meta information.
   EnvGuard keeps per-environment configuration, encrypts secret values
   and records every change in a tamper-evident audit trail.
"""
__title__ = 'envguard'
__description__ = (
   'Local secrets manager with encrypted values, tamper-evident '
   'audit trail and scheduled credential rotation.'
)
__version__ = '1.0.0'
__copyright__ = 'Copyright (c) 2023 Jesus Lara'
__author__ = 'Jesus Lara'
__author_email__ = 'jesuslarag@gmail.com'
__license__ = 'Apache-2.0'
