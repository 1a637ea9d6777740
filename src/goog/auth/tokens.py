"""
Token manager for goog.

This module provides the TokenManager class that hands out valid access
tokens per account alias. It reads credentials from the CredentialStore,
refreshes them on demand through a TokenExchanger, and writes the refreshed
credential back. Refreshes for one alias are serialized so that concurrent
callers share a single exchange.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

import google.auth.exceptions
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from goog.auth.exceptions import (
    CredentialNotFoundError,
    OAuthConfigError,
    ReauthRequiredError,
    RefreshRejectedError,
    TokenRefreshError,
)
from goog.auth.models import (
    DEFAULT_REFRESH_SKEW,
    Credential,
    OAuthClientConfig,
    TokenInfo,
    utcnow,
)
from goog.auth.store import CredentialStore

# Configure logger
logger = logging.getLogger(__name__)


class TokenExchanger(ABC):
    """Exchanges a refresh token for a new access token."""

    @abstractmethod
    async def refresh(self, credential: Credential, oauth_config: Optional[OAuthClientConfig]) -> Credential:
        """
        Refresh a credential.

        Returns:
            A credential carrying the new access token and expiry

        Raises:
            RefreshRejectedError: If the provider rejects the refresh token
            TokenRefreshError: If the exchange fails for another reason
        """


def _rejection_reason(error: google.auth.exceptions.RefreshError) -> str:
    """Pull the OAuth error code (e.g. invalid_grant) out of a RefreshError."""
    for arg in error.args[1:]:
        if isinstance(arg, dict) and arg.get("error"):
            return str(arg["error"])
    message = str(error.args[0]) if error.args else str(error)
    return message.split(":", 1)[0].strip() or "refresh rejected"


class GoogleTokenExchanger(TokenExchanger):
    """Refreshes credentials against Google's token endpoint with google-auth."""

    def __init__(self, request_factory: Callable[[], Request] = Request):
        self._request_factory = request_factory

    async def refresh(self, credential: Credential, oauth_config: Optional[OAuthClientConfig]) -> Credential:
        if oauth_config is None:
            raise OAuthConfigError("OAuth client configuration is required to refresh tokens")
        oauth_config.validate_complete()

        if not credential.refresh_token:
            raise RefreshRejectedError("no refresh token")

        google_credentials = credential.to_google_credentials(oauth_config)
        request = self._request_factory()

        try:
            # Run the refresh in a thread to avoid blocking
            await asyncio.to_thread(google_credentials.refresh, request)
        except google.auth.exceptions.RefreshError as e:
            if getattr(e, "retryable", False):
                raise TokenRefreshError(f"Token endpoint temporarily unavailable: {e}", e)
            raise RefreshRejectedError(_rejection_reason(e), e)
        except google.auth.exceptions.TransportError as e:
            raise TokenRefreshError(f"Network error refreshing token: {e}", e)

        return Credential(
            access_token=google_credentials.token,
            refresh_token=google_credentials.refresh_token or credential.refresh_token,
            token_type=credential.token_type,
            expiry=google_credentials.expiry,
            granted_scopes=credential.granted_scopes,
        )


class TokenSource:
    """
    Yields a currently valid access token for one alias.

    The source caches the last credential it saw and only goes back to the
    TokenManager once that credential is within the refresh skew of expiry.
    """

    def __init__(self, manager: "TokenManager", alias: str, credential: Credential):
        self.alias = alias
        self._manager = manager
        self._credential = credential

    async def credential(self) -> Credential:
        if not self._manager.is_fresh(self._credential):
            self._credential = await self._manager.ensure_fresh(self.alias)
        return self._credential

    async def token(self) -> str:
        """Return a valid access token, refreshing it first if needed."""
        return (await self.credential()).access_token

    async def credentials(self) -> Credentials:
        """Return google-auth Credentials for googleapiclient.discovery.build."""
        credential = await self.credential()
        return credential.to_google_credentials(self._manager.oauth_config)


class TokenManager:
    """
    Manages OAuth tokens for every configured account alias.

    Each refresh is attempted once per request; a rejected refresh token is
    reported as ReauthRequiredError and never retried silently.
    """

    def __init__(
        self,
        store: CredentialStore,
        exchanger: Optional[TokenExchanger] = None,
        oauth_config: Optional[OAuthClientConfig] = None,
        refresh_skew: timedelta = DEFAULT_REFRESH_SKEW,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the token manager.

        Args:
            store: Credential store holding one credential per alias
            exchanger: Refresh primitive (defaults to GoogleTokenExchanger)
            oauth_config: OAuth client used for refreshes
            refresh_skew: Refresh when the remaining lifetime drops below this
            clock: Returns the current aware UTC time
        """
        self.store = store
        self.exchanger = exchanger or GoogleTokenExchanger()
        self.oauth_config = oauth_config
        self.refresh_skew = refresh_skew
        self.clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}
        self._inflight: Dict[str, asyncio.Task] = {}

    def _lock_for(self, alias: str) -> asyncio.Lock:
        lock = self._locks.get(alias)
        if lock is None:
            lock = self._locks[alias] = asyncio.Lock()
        return lock

    def is_fresh(self, credential: Credential) -> bool:
        return credential.is_fresh(self.clock(), self.refresh_skew)

    async def _load(self, alias: str) -> Credential:
        return await asyncio.to_thread(self.store.get, alias)

    async def ensure_fresh(self, alias: str) -> Credential:
        """
        Return a credential for the alias that is valid beyond the refresh skew.

        Raises:
            CredentialNotFoundError: If the alias has no stored credential
            ReauthRequiredError: If the credential cannot be refreshed
            TokenRefreshError: If the exchange fails for another reason
            StoreUnavailableError: If the credential store cannot be reached
        """
        credential = await self._load(alias)
        if self.is_fresh(credential):
            logger.debug(f"Cached token for {alias} is still valid")
            return credential

        return await self._shared_refresh(alias, self.oauth_config, force=False)

    async def _shared_refresh(
        self, alias: str, oauth_config: Optional[OAuthClientConfig], force: bool
    ) -> Credential:
        """
        Join the in-flight refresh for an alias, or start one.

        Every caller that arrives while a refresh is running gets that
        refresh's result or its exception; there is one exchange per burst.
        """
        task = self._inflight.get(alias)
        if task is not None:
            logger.debug(f"Waiting for in-flight token refresh for {alias}")
        else:
            task = asyncio.ensure_future(self._refresh_once(alias, oauth_config, force))
            self._inflight[alias] = task
            task.add_done_callback(lambda done: self._forget_inflight(alias, done))
        # shield: a cancelled caller must not cancel the refresh other callers wait on
        return await asyncio.shield(task)

    def _forget_inflight(self, alias: str, task: asyncio.Task) -> None:
        if self._inflight.get(alias) is task:
            del self._inflight[alias]

    async def _refresh_once(
        self, alias: str, oauth_config: Optional[OAuthClientConfig], force: bool
    ) -> Credential:
        async with self._lock_for(alias):
            credential = await self._load(alias)
            if not force and self.is_fresh(credential):
                logger.debug(f"Token for {alias} was refreshed by a concurrent request")
                return credential
            return await self._refresh_locked(alias, credential, oauth_config)

    async def _refresh_locked(
        self, alias: str, credential: Credential, oauth_config: Optional[OAuthClientConfig]
    ) -> Credential:
        if not credential.refresh_token:
            logger.warning(f"No refresh token for {alias}, cannot refresh")
            raise ReauthRequiredError(alias, "no refresh token stored")

        logger.debug(f"Refreshing token for {alias}")
        try:
            refreshed = await self.exchanger.refresh(credential, oauth_config)
        except RefreshRejectedError as e:
            logger.warning(f"Refresh token for {alias} was rejected: {e.reason}")
            raise ReauthRequiredError(alias, e.reason, e)
        except TokenRefreshError as e:
            logger.error(f"Token refresh failed for {alias}: {e.message}")
            raise TokenRefreshError(f"Failed to refresh token for {alias}: {e.message}", e, alias)

        updates = {}
        if not refreshed.refresh_token:
            updates["refresh_token"] = credential.refresh_token
        if not refreshed.granted_scopes:
            updates["granted_scopes"] = list(credential.granted_scopes)
        if updates:
            refreshed = refreshed.model_copy(update=updates)

        if not self.is_fresh(refreshed):
            raise TokenRefreshError(
                f"Token endpoint returned an already-expiring token for {alias}", alias=alias
            )

        await asyncio.to_thread(self.store.put, alias, refreshed)
        logger.info(f"Successfully refreshed token for {alias}")
        return refreshed

    async def get_token_source(self, alias: str) -> TokenSource:
        """
        Get a token source for an account, refreshing the stored token if needed.

        Args:
            alias: Account alias

        Returns:
            A TokenSource primed with a valid credential

        Raises:
            CredentialNotFoundError: If the alias has no stored credential
            ReauthRequiredError: If the user has to sign in again
            TokenRefreshError: If the refresh failed for another reason
        """
        credential = await self.ensure_fresh(alias)
        return TokenSource(self, alias, credential)

    async def get_credentials(self, alias: str) -> Credentials:
        """Valid google-auth Credentials for an alias."""
        source = await self.get_token_source(alias)
        return await source.credentials()

    async def refresh_token(self, alias: str, oauth_config: Optional[OAuthClientConfig] = None) -> Credential:
        """
        Refresh the token for an account even if it is still valid.

        Args:
            alias: Account alias
            oauth_config: OAuth client to refresh with (defaults to the manager's)

        Returns:
            The refreshed credential
        """
        return await self._shared_refresh(alias, oauth_config or self.oauth_config, force=True)

    async def get_token_info(self, alias: str) -> TokenInfo:
        """
        Describe the stored token for an account without refreshing it.

        Returns:
            TokenInfo with has_token False when nothing is stored
        """
        try:
            credential = await self._load(alias)
        except CredentialNotFoundError:
            return TokenInfo(alias=alias)
        return TokenInfo.from_credential(alias, credential, self.clock())

    async def get_granted_scopes(self, alias: str) -> List[str]:
        """
        Scopes actually granted to an account, possibly fewer than requested.

        Raises:
            CredentialNotFoundError: If the alias has no stored credential
        """
        credential = await self._load(alias)
        return list(credential.granted_scopes)

    async def has_scope(self, alias: str, scope: str) -> bool:
        try:
            return scope in await self.get_granted_scopes(alias)
        except CredentialNotFoundError:
            return False

    async def save_credential(self, alias: str, credential: Credential) -> None:
        async with self._lock_for(alias):
            await asyncio.to_thread(self.store.put, alias, credential)
        logger.info(f"Stored credential for {alias}")

    async def delete_credential(self, alias: str) -> bool:
        """Delete the stored credential; return False if none existed."""
        async with self._lock_for(alias):
            try:
                await asyncio.to_thread(self.store.delete, alias)
            except CredentialNotFoundError:
                return False
        return True
