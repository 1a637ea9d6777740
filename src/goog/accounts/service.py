"""
Account service for goog.

This module provides the AccountService facade used by the CLI: it ties the
account registry, the token manager and the OAuth flow runner together so
that logging in, logging out, renaming and removing an account keep the
registry and the credential store consistent.
"""
import asyncio
import logging
from typing import List, Optional

from goog.accounts.models import Account, validate_alias
from goog.accounts.registry import AccountRegistry
from goog.accounts.resolver import AccountResolver
from goog.auth.exceptions import (
    AccountNotFoundError,
    AuthError,
    AuthorizationFlowError,
    CredentialNotFoundError,
    DuplicateAliasError,
)
from goog.auth.flow import FlowResult, OAuthFlowRunner
from goog.auth.scopes import DEFAULT_SCOPES, with_identity_scopes
from goog.auth.tokens import TokenManager

# Configure logger
logger = logging.getLogger(__name__)


class AccountService:
    """
    Account management operations.

    All collaborators are passed in explicitly; tests build the service
    from in-memory fakes.
    """

    def __init__(
        self,
        registry: AccountRegistry,
        token_manager: TokenManager,
        flow_runner: Optional[OAuthFlowRunner] = None,
        resolver: Optional[AccountResolver] = None,
        default_scopes: Optional[List[str]] = None,
    ):
        self.registry = registry
        self.token_manager = token_manager
        self.flow_runner = flow_runner
        self.resolver = resolver or AccountResolver(registry)
        self.default_scopes = list(default_scopes or DEFAULT_SCOPES)

    def list(self) -> List[Account]:
        return self.registry.list()

    def get_token_manager(self) -> TokenManager:
        return self.token_manager

    def resolve_account(self, flag_value: Optional[str] = "") -> Account:
        return self.resolver.resolve(flag_value)

    def show(self) -> Account:
        """The account commands run against when no --account is given."""
        return self.resolver.resolve("")

    def switch(self, alias: str) -> None:
        self.registry.switch(alias)

    async def _authorize(self, scopes: Optional[List[str]]) -> FlowResult:
        if self.flow_runner is None:
            raise AuthorizationFlowError("No OAuth flow runner configured")
        requested = with_identity_scopes(scopes or self.default_scopes)
        return await self.flow_runner.run(requested)

    async def add(self, alias: str, scopes: Optional[List[str]] = None) -> Account:
        """
        Add a new account by running the OAuth flow.

        Args:
            alias: Alias for the new account
            scopes: Scopes to request (defaults to the service's default scopes)

        Returns:
            The registered account

        Raises:
            DuplicateAliasError: If the alias is already registered
            AuthorizationFlowError: If the OAuth flow fails
        """
        alias = validate_alias(alias)
        if self.registry.contains(alias):
            raise DuplicateAliasError(alias)

        result = await self._authorize(scopes)
        await self.token_manager.save_credential(alias, result.credential)

        try:
            account = self.registry.add(alias, result.email, result.granted_scopes)
        except AuthError:
            # Do not leave a credential behind for an account that was never registered
            await self.token_manager.delete_credential(alias)
            raise

        logger.info(f"Added account {alias} as {result.email}")
        return account

    async def login(self, alias: str, scopes: Optional[List[str]] = None) -> Account:
        """
        Authorize an alias: add it if new, otherwise re-authorize it in place.

        Re-authorization replaces the stored credential and updates the
        account's email and scopes.
        """
        alias = validate_alias(alias)
        if not self.registry.contains(alias):
            return await self.add(alias, scopes)

        previous = self.registry.get(alias)
        result = await self._authorize(scopes or previous.scopes or None)
        if previous.email and result.email != previous.email:
            logger.warning(
                f"Account {alias} was {previous.email} and is now signed in as {result.email}"
            )

        await self.token_manager.save_credential(alias, result.credential)
        account = self.registry.update(alias, email=result.email, scopes=result.granted_scopes)
        logger.info(f"Re-authorized account {alias} as {result.email}")
        return account

    async def remove(self, alias: str) -> None:
        """
        Remove an account and its credential.

        Raises:
            AccountNotFoundError: If the alias is not registered
        """
        self.registry.get(alias)
        if not await self.token_manager.delete_credential(alias):
            logger.debug(f"Account {alias} had no stored credential")
        self.registry.remove(alias)

    async def logout(self, alias: str, remove_account: bool = False) -> bool:
        """
        Delete the credential of an account, optionally removing the account too.

        Returns:
            True if a credential was deleted
        """
        if remove_account:
            self.registry.get(alias)
        deleted = await self.token_manager.delete_credential(alias)
        if remove_account:
            self.registry.remove(alias)
        logger.info(f"Logged out of account {alias}")
        return deleted

    async def rename(self, old_alias: str, new_alias: str) -> Account:
        """
        Rename an account, moving its credential to the new alias.

        Raises:
            AccountNotFoundError: If the old alias is not registered
            DuplicateAliasError: If the new alias is already registered
        """
        new_alias = validate_alias(new_alias)
        if not self.registry.contains(old_alias):
            raise AccountNotFoundError(old_alias)
        if self.registry.contains(new_alias):
            raise DuplicateAliasError(new_alias)

        store = self.token_manager.store
        try:
            credential = await asyncio.to_thread(store.get, old_alias)
        except CredentialNotFoundError:
            credential = None

        if credential is not None:
            await self.token_manager.save_credential(new_alias, credential)

        try:
            account = self.registry.rename(old_alias, new_alias)
        except AuthError:
            if credential is not None:
                await self.token_manager.delete_credential(new_alias)
            raise

        if credential is not None:
            try:
                await self.token_manager.delete_credential(old_alias)
            except AuthError as e:
                # The registry already points at the new alias
                logger.warning(f"Could not delete credential of old alias {old_alias}: {e}")

        return account
