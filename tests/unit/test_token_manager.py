"""
Unit tests for the token manager
"""
import asyncio
from datetime import timedelta
from unittest.mock import MagicMock

import google.auth.exceptions
import pytest

from conftest import FakeExchanger, make_credential
from goog.auth.exceptions import (
    CredentialNotFoundError,
    OAuthConfigError,
    ReauthRequiredError,
    RefreshRejectedError,
    StoreUnavailableError,
    TokenRefreshError,
)
from goog.auth.models import Credential, OAuthClientConfig
from goog.auth.tokens import GoogleTokenExchanger, TokenManager


@pytest.mark.asyncio
async def test_expired_credential_is_refreshed_and_written_back(token_manager, store, exchanger, clock):
    store.put("work", make_credential(clock, minutes=-60))

    source = await token_manager.get_token_source("work")

    assert await source.token() == "refreshed-1"
    stored = store.get("work")
    assert stored.expiry > clock()
    assert stored.access_token == "refreshed-1"
    # The provider did not rotate the refresh token, so the old one is kept
    assert stored.refresh_token == "refresh-token"
    assert stored.granted_scopes == ["https://www.googleapis.com/auth/gmail.readonly"]
    assert exchanger.calls == 1


@pytest.mark.asyncio
async def test_stale_credential_without_refresh_token_requires_reauth(token_manager, store, exchanger, clock):
    store.put("stale", make_credential(clock, minutes=-60, refresh_token=None))

    with pytest.raises(ReauthRequiredError) as exc_info:
        await token_manager.get_token_source("stale")

    assert exc_info.value.alias == "stale"
    assert "goog auth login --account stale" in exc_info.value.message
    assert exchanger.calls == 0


@pytest.mark.asyncio
async def test_fresh_credential_is_served_from_store(token_manager, store, exchanger, clock):
    store.put("work", make_credential(clock, minutes=30, token="cached"))

    source = await token_manager.get_token_source("work")

    assert await source.token() == "cached"
    assert exchanger.calls == 0


@pytest.mark.asyncio
async def test_token_within_skew_is_refreshed(token_manager, store, exchanger, clock):
    # 30 seconds left is inside the 60 second skew
    store.put("work", make_credential(clock, minutes=0.5))

    source = await token_manager.get_token_source("work")

    assert await source.token() == "refreshed-1"
    assert exchanger.calls == 1


@pytest.mark.asyncio
async def test_token_source_refreshes_when_cached_token_ages(token_manager, store, exchanger, clock):
    store.put("work", make_credential(clock, minutes=10, token="cached"))
    source = await token_manager.get_token_source("work")
    assert await source.token() == "cached"

    clock.advance(minutes=30)

    assert await source.token() == "refreshed-1"
    assert exchanger.calls == 1


@pytest.mark.asyncio
async def test_unknown_alias_raises_not_found(token_manager):
    with pytest.raises(CredentialNotFoundError):
        await token_manager.get_token_source("nobody")


@pytest.mark.asyncio
async def test_rejected_refresh_requires_reauth(token_manager, store, exchanger, clock):
    store.put("work", make_credential(clock, minutes=-5))
    exchanger.reject("invalid_grant")

    with pytest.raises(ReauthRequiredError) as exc_info:
        await token_manager.get_token_source("work")

    assert exc_info.value.reason == "invalid_grant"
    assert isinstance(exc_info.value.original_error, RefreshRejectedError)
    # Nothing is fabricated or written
    assert store.get("work").access_token == "access-token"


@pytest.mark.asyncio
async def test_transport_failure_is_token_refresh_error(token_manager, store, exchanger, clock):
    store.put("work", make_credential(clock, minutes=-5))
    exchanger.fail("connection reset")

    with pytest.raises(TokenRefreshError) as exc_info:
        await token_manager.get_token_source("work")

    assert not isinstance(exc_info.value, ReauthRequiredError)
    assert exc_info.value.alias == "work"
    assert exchanger.calls == 1


@pytest.mark.asyncio
async def test_refresh_returning_expired_token_is_an_error(store, oauth_config, clock):
    exchanger = FakeExchanger(clock, lifetime=timedelta(seconds=10))
    manager = TokenManager(store, exchanger, oauth_config, clock=clock)
    store.put("work", make_credential(clock, minutes=-5))

    with pytest.raises(TokenRefreshError):
        await manager.get_token_source("work")
    assert store.get("work").access_token == "access-token"


@pytest.mark.asyncio
async def test_concurrent_requests_share_one_refresh(store, oauth_config, clock):
    exchanger = FakeExchanger(clock, delay=0.05)
    manager = TokenManager(store, exchanger, oauth_config, clock=clock)
    store.put("work", make_credential(clock, minutes=-60))

    sources = await asyncio.gather(*(manager.get_token_source("work") for _ in range(5)))
    tokens = await asyncio.gather(*(source.token() for source in sources))

    assert exchanger.calls == 1
    assert set(tokens) == {"refreshed-1"}


@pytest.mark.asyncio
async def test_concurrent_requests_share_one_rejected_refresh(store, oauth_config, clock):
    exchanger = FakeExchanger(clock, delay=0.05)
    exchanger.reject("invalid_grant")
    manager = TokenManager(store, exchanger, oauth_config, clock=clock)
    store.put("work", make_credential(clock, minutes=-60))

    results = await asyncio.gather(
        *(manager.get_token_source("work") for _ in range(5)), return_exceptions=True
    )

    assert exchanger.calls == 1
    assert all(isinstance(r, ReauthRequiredError) for r in results)


@pytest.mark.asyncio
async def test_concurrent_requests_share_one_failed_refresh(store, oauth_config, clock):
    exchanger = FakeExchanger(clock, delay=0.05)
    exchanger.fail("network unreachable")
    manager = TokenManager(store, exchanger, oauth_config, clock=clock)
    store.put("work", make_credential(clock, minutes=-60))

    results = await asyncio.gather(
        *(manager.get_token_source("work") for _ in range(5)), return_exceptions=True
    )

    assert exchanger.calls == 1
    assert all(isinstance(r, TokenRefreshError) for r in results)
    assert not any(isinstance(r, ReauthRequiredError) for r in results)


@pytest.mark.asyncio
async def test_next_request_after_failed_refresh_tries_again(store, oauth_config, clock):
    exchanger = FakeExchanger(clock)
    exchanger.fail("network unreachable")
    manager = TokenManager(store, exchanger, oauth_config, clock=clock)
    store.put("work", make_credential(clock, minutes=-60))

    with pytest.raises(TokenRefreshError):
        await manager.get_token_source("work")

    exchanger.error = None
    source = await manager.get_token_source("work")
    assert await source.token() == "refreshed-2"


@pytest.mark.asyncio
async def test_cancelled_caller_does_not_cancel_shared_refresh(store, oauth_config, clock):
    exchanger = FakeExchanger(clock, delay=0.05)
    manager = TokenManager(store, exchanger, oauth_config, clock=clock)
    store.put("work", make_credential(clock, minutes=-60))

    first = asyncio.ensure_future(manager.get_token_source("work"))
    second = asyncio.ensure_future(manager.get_token_source("work"))
    await asyncio.sleep(0.01)
    first.cancel()

    source = await second
    assert await source.token() == "refreshed-1"
    assert exchanger.calls == 1


@pytest.mark.asyncio
async def test_delete_keeps_refresh_serialized(store, oauth_config, clock):
    exchanger = FakeExchanger(clock, delay=0.05)
    manager = TokenManager(store, exchanger, oauth_config, clock=clock)
    store.put("work", make_credential(clock, minutes=-60))
    lock = manager._lock_for("work")

    refresh = asyncio.ensure_future(manager.get_token_source("work"))
    await asyncio.sleep(0.01)
    await manager.delete_credential("work")
    await refresh

    # The alias keeps one lock for its lifetime
    assert manager._lock_for("work") is lock


@pytest.mark.asyncio
async def test_refreshes_for_different_aliases_are_independent(store, oauth_config, clock):
    exchanger = FakeExchanger(clock, delay=0.01)
    manager = TokenManager(store, exchanger, oauth_config, clock=clock)
    store.put("work", make_credential(clock, minutes=-60))
    store.put("personal", make_credential(clock, minutes=-60))

    await asyncio.gather(manager.get_token_source("work"), manager.get_token_source("personal"))

    assert exchanger.calls == 2


@pytest.mark.asyncio
async def test_get_token_info_never_refreshes_or_writes(token_manager, store, exchanger, clock):
    store.put("work", make_credential(clock, minutes=-60))
    before = store.get("work")

    first = await token_manager.get_token_info("work")
    second = await token_manager.get_token_info("work")

    assert first == second
    assert first.has_token
    assert first.is_expired
    assert first.has_refresh_token
    assert first.remaining == timedelta(minutes=-60)
    assert store.get("work") == before
    assert exchanger.calls == 0


@pytest.mark.asyncio
async def test_get_token_info_for_missing_alias(token_manager):
    info = await token_manager.get_token_info("nobody")
    assert info.alias == "nobody"
    assert not info.has_token
    assert info.expiry is None


@pytest.mark.asyncio
async def test_explicit_refresh_ignores_freshness(token_manager, store, exchanger, clock):
    store.put("work", make_credential(clock, minutes=50))

    credential = await token_manager.refresh_token("work")

    assert credential.access_token == "refreshed-1"
    assert store.get("work").access_token == "refreshed-1"
    assert exchanger.calls == 1


@pytest.mark.asyncio
async def test_granted_scopes_and_has_scope(token_manager, store, clock):
    scopes = ["https://www.googleapis.com/auth/gmail.readonly", "openid"]
    store.put("work", make_credential(clock, scopes=scopes))

    assert await token_manager.get_granted_scopes("work") == scopes
    assert await token_manager.has_scope("work", "openid")
    assert not await token_manager.has_scope("work", "https://www.googleapis.com/auth/drive")
    assert not await token_manager.has_scope("nobody", "openid")


@pytest.mark.asyncio
async def test_save_and_delete_credential(token_manager, store, clock):
    await token_manager.save_credential("work", make_credential(clock))
    assert store.exists("work")

    assert await token_manager.delete_credential("work") is True
    assert await token_manager.delete_credential("work") is False
    assert not store.exists("work")


@pytest.mark.asyncio
async def test_store_failure_propagates(exchanger, oauth_config, clock):
    store = MagicMock()
    store.get.side_effect = StoreUnavailableError("database is locked", alias="work")
    manager = TokenManager(store, exchanger, oauth_config, clock=clock)

    with pytest.raises(StoreUnavailableError):
        await manager.get_token_source("work")


@pytest.mark.asyncio
async def test_get_credentials_builds_google_credentials(token_manager, store, clock, oauth_config):
    store.put("work", make_credential(clock, minutes=30, token="cached"))

    credentials = await token_manager.get_credentials("work")

    assert credentials.token == "cached"
    assert credentials.refresh_token == "refresh-token"
    assert credentials.client_id == oauth_config.client_id


@pytest.mark.asyncio
async def test_google_exchanger_maps_refresh_errors(oauth_config, mocker):
    credential = Credential(access_token="old", refresh_token="refresh")
    exchanger = GoogleTokenExchanger(request_factory=MagicMock)

    mocker.patch(
        "google.oauth2.credentials.Credentials.refresh",
        side_effect=google.auth.exceptions.RefreshError(
            "invalid_grant: Token has been expired or revoked.",
            {"error": "invalid_grant", "error_description": "Token has been expired or revoked."},
        ),
    )
    with pytest.raises(RefreshRejectedError) as exc_info:
        await exchanger.refresh(credential, oauth_config)
    assert exc_info.value.reason == "invalid_grant"

    mocker.patch(
        "google.oauth2.credentials.Credentials.refresh",
        side_effect=google.auth.exceptions.TransportError("connection refused"),
    )
    with pytest.raises(TokenRefreshError) as exc_info:
        await exchanger.refresh(credential, oauth_config)
    assert not isinstance(exc_info.value, RefreshRejectedError)


@pytest.mark.asyncio
async def test_google_exchanger_requires_client_config():
    exchanger = GoogleTokenExchanger(request_factory=MagicMock)
    credential = Credential(access_token="old", refresh_token="refresh")

    with pytest.raises(OAuthConfigError):
        await exchanger.refresh(credential, None)
    with pytest.raises(OAuthConfigError):
        await exchanger.refresh(credential, OAuthClientConfig(client_id="id"))
