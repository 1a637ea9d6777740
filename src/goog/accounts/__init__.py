"""
Account management for goog.

This module keeps the registry of configured Google accounts, resolves which
account a command runs against, and coordinates account changes with the
credential store.
"""
from goog.accounts.models import Account
from goog.accounts.registry import AccountRegistry, RegistryFile
from goog.accounts.resolver import AccountResolver
from goog.accounts.service import AccountService

__all__ = [
    "Account",
    "AccountRegistry",
    "RegistryFile",
    "AccountResolver",
    "AccountService",
]
