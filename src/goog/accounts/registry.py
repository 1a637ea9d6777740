"""
Account registry for goog.

This module keeps the list of configured accounts and the default alias.
The whole registry is persisted as one JSON document; every mutation is a
read-modify-write of that document, replaced atomically on disk.
"""
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Callable, List, Optional, Union

from pydantic import ValidationError

from goog.accounts.models import (
    Account,
    AccountRecord,
    RegistryDocument,
    validate_alias,
    validate_email,
)
from goog.auth.exceptions import (
    AccountNotFoundError,
    DuplicateAliasError,
    StoreUnavailableError,
)
from goog.auth.models import dedupe_scopes

# Configure logger
logger = logging.getLogger(__name__)


class RegistryFile:
    """JSON file holding the RegistryDocument."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def load(self) -> RegistryDocument:
        """
        Load the registry document; a missing file is an empty registry.

        Raises:
            StoreUnavailableError: If the file cannot be read or parsed
        """
        if not self.path.exists():
            return RegistryDocument()
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
            return RegistryDocument.model_validate(data)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            raise StoreUnavailableError(f"Cannot read account registry {self.path}: {e}", e)

    def save(self, document: RegistryDocument) -> None:
        """
        Write the registry document atomically with owner-only permissions.

        Raises:
            StoreUnavailableError: If the file cannot be written
        """
        tmp_name = None
        try:
            # Ensure directory exists
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w", dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp", delete=False
            ) as tmp:
                tmp_name = tmp.name
                tmp.write(document.model_dump_json(indent=2))
                tmp.flush()
                os.fsync(tmp.fileno())
            if os.name == "posix":
                os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self.path)
            tmp_name = None
        except OSError as e:
            raise StoreUnavailableError(f"Cannot write account registry {self.path}: {e}", e)
        finally:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)


class AccountRegistry:
    """
    The configured accounts and the default alias.

    Aliases are unique and at most one account is the default. Removing
    the default account promotes the next alias in sorted order.
    """

    def __init__(self, registry_file: RegistryFile):
        self.file = registry_file
        self._document: Optional[RegistryDocument] = None

    @property
    def document(self) -> RegistryDocument:
        if self._document is None:
            self._document = self.file.load()
        return self._document

    def _mutate(self, change: Callable[[RegistryDocument], None]) -> RegistryDocument:
        document = self.file.load()
        change(document)
        self.file.save(document)
        self._document = document
        return document

    def reload(self) -> None:
        self._document = None

    def list(self) -> List[Account]:
        """All accounts sorted by alias."""
        document = self.document
        return [
            Account.from_record(alias, document.accounts[alias], document.default_account)
            for alias in document.sorted_aliases()
        ]

    def aliases(self) -> List[str]:
        return self.document.sorted_aliases()

    def contains(self, alias: str) -> bool:
        return alias in self.document.accounts

    def get(self, alias: str) -> Account:
        """
        Look up one account.

        Raises:
            AccountNotFoundError: If the alias is not registered
        """
        document = self.document
        record = document.accounts.get(alias)
        if record is None:
            raise AccountNotFoundError(alias)
        return Account.from_record(alias, record, document.default_account)

    def default(self) -> Optional[Account]:
        """The default account, or None when no default is set."""
        document = self.document
        alias = document.default_account
        if alias is None or alias not in document.accounts:
            return None
        return Account.from_record(alias, document.accounts[alias], alias)

    def add(self, alias: str, email: str, scopes: List[str]) -> Account:
        """
        Register a new account; the first account becomes the default.

        Raises:
            InvalidAliasError: If the alias is blank or unusable
            InvalidEmailError: If the email is malformed
            DuplicateAliasError: If the alias is already registered
        """
        alias = validate_alias(alias)
        if email:
            validate_email(email, alias)

        def change(document: RegistryDocument) -> None:
            if alias in document.accounts:
                raise DuplicateAliasError(alias)
            document.accounts[alias] = AccountRecord(email=email, scopes=dedupe_scopes(scopes))
            if not document.default_account or document.default_account not in document.accounts:
                document.default_account = alias

        document = self._mutate(change)
        logger.info(f"Added account {alias} ({email})")
        return Account.from_record(alias, document.accounts[alias], document.default_account)

    def remove(self, alias: str) -> None:
        """
        Unregister an account.

        Raises:
            AccountNotFoundError: If the alias is not registered
        """
        def change(document: RegistryDocument) -> None:
            if alias not in document.accounts:
                raise AccountNotFoundError(alias)
            del document.accounts[alias]
            if document.default_account == alias:
                remaining = document.sorted_aliases()
                document.default_account = remaining[0] if remaining else None

        document = self._mutate(change)
        logger.info(f"Removed account {alias}")
        if document.default_account:
            logger.debug(f"Default account is now {document.default_account}")

    def switch(self, alias: str) -> None:
        """
        Make an account the default.

        Raises:
            AccountNotFoundError: If the alias is not registered
        """
        def change(document: RegistryDocument) -> None:
            if alias not in document.accounts:
                raise AccountNotFoundError(alias)
            document.default_account = alias

        self._mutate(change)
        logger.info(f"Default account set to {alias}")

    def rename(self, old_alias: str, new_alias: str) -> Account:
        """
        Change an account's alias, keeping its record and default status.

        Raises:
            AccountNotFoundError: If the old alias is not registered
            DuplicateAliasError: If the new alias is already registered
            InvalidAliasError: If the new alias is unusable
        """
        new_alias = validate_alias(new_alias)

        def change(document: RegistryDocument) -> None:
            if old_alias not in document.accounts:
                raise AccountNotFoundError(old_alias)
            if new_alias in document.accounts:
                raise DuplicateAliasError(new_alias)
            document.accounts[new_alias] = document.accounts.pop(old_alias)
            if document.default_account == old_alias:
                document.default_account = new_alias

        document = self._mutate(change)
        logger.info(f"Renamed account {old_alias} to {new_alias}")
        return Account.from_record(new_alias, document.accounts[new_alias], document.default_account)

    def update(self, alias: str, email: Optional[str] = None, scopes: Optional[List[str]] = None) -> Account:
        """
        Update the email and/or scopes of an account after re-authorization.

        Raises:
            AccountNotFoundError: If the alias is not registered
        """
        if email:
            validate_email(email, alias)

        def change(document: RegistryDocument) -> None:
            record = document.accounts.get(alias)
            if record is None:
                raise AccountNotFoundError(alias)
            if email:
                record.email = email
            if scopes is not None:
                record.scopes = dedupe_scopes(scopes)

        document = self._mutate(change)
        return Account.from_record(alias, document.accounts[alias], document.default_account)

    def update_email(self, alias: str, email: str) -> Account:
        return self.update(alias, email=email)

    def update_scopes(self, alias: str, scopes: List[str]) -> Account:
        return self.update(alias, scopes=scopes)
