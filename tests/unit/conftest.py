"""
Shared fixtures for goog unit tests.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import SecretStr

from goog.accounts.registry import AccountRegistry, RegistryFile
from goog.auth.exceptions import RefreshRejectedError, TokenRefreshError
from goog.auth.models import Credential, OAuthClientConfig
from goog.auth.store import CredentialStore, MemoryBackend
from goog.auth.tokens import TokenExchanger, TokenManager

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock returning aware UTC datetimes."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeExchanger(TokenExchanger):
    """Token exchanger that counts calls and hands out numbered tokens."""

    def __init__(self, clock: FakeClock, lifetime: timedelta = timedelta(hours=1), delay: float = 0.0):
        self.clock = clock
        self.lifetime = lifetime
        self.delay = delay
        self.calls = 0
        self.error = None

    async def refresh(self, credential, oauth_config):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return Credential(
            access_token=f"refreshed-{self.calls}",
            refresh_token=None,
            expiry=self.clock() + self.lifetime,
        )

    def reject(self, reason: str = "invalid_grant") -> None:
        self.error = RefreshRejectedError(reason)

    def fail(self, message: str = "connection reset") -> None:
        self.error = TokenRefreshError(message)


def make_credential(clock, minutes: float = 30, refresh_token="refresh-token", scopes=None, token="access-token"):
    return Credential(
        access_token=token,
        refresh_token=refresh_token,
        expiry=clock() + timedelta(minutes=minutes),
        granted_scopes=scopes or ["https://www.googleapis.com/auth/gmail.readonly"],
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return CredentialStore(MemoryBackend())


@pytest.fixture
def exchanger(clock):
    return FakeExchanger(clock)


@pytest.fixture
def oauth_config():
    return OAuthClientConfig(client_id="client-id", client_secret=SecretStr("client-secret"))


@pytest.fixture
def token_manager(store, exchanger, oauth_config, clock):
    return TokenManager(store, exchanger, oauth_config, clock=clock)


@pytest.fixture
def registry(tmp_path):
    return AccountRegistry(RegistryFile(tmp_path / "accounts.json"))
