"""
Authentication module for goog.

This module handles OAuth authentication with Google APIs: the consent flow,
per-account credential storage, and on-demand token refresh.
"""
from goog.auth.exceptions import (
    AuthError,
    AuthorizationFlowError,
    CredentialNotFoundError,
    FlowDeniedError,
    FlowTimeoutError,
    ReauthRequiredError,
    StoreUnavailableError,
    TokenRefreshError,
)
from goog.auth.flow import FlowResult, FlowState, OAuthFlowRunner
from goog.auth.models import Credential, OAuthClientConfig, TokenInfo
from goog.auth.store import CredentialBackend, CredentialStore, open_backend
from goog.auth.tokens import GoogleTokenExchanger, TokenExchanger, TokenManager, TokenSource

__all__ = [
    "AuthError",
    "AuthorizationFlowError",
    "CredentialNotFoundError",
    "FlowDeniedError",
    "FlowTimeoutError",
    "ReauthRequiredError",
    "StoreUnavailableError",
    "TokenRefreshError",
    "FlowResult",
    "FlowState",
    "OAuthFlowRunner",
    "Credential",
    "OAuthClientConfig",
    "TokenInfo",
    "CredentialBackend",
    "CredentialStore",
    "open_backend",
    "GoogleTokenExchanger",
    "TokenExchanger",
    "TokenManager",
    "TokenSource",
]
