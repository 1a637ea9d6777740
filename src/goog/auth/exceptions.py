"""
Custom exceptions for the authentication and account modules.

This module defines exceptions that can be raised while storing, refreshing
and resolving per-account OAuth credentials, and while running the
interactive authorization flow. Every error that concerns one account
carries its alias so multi-account setups remain debuggable.
"""
from typing import Iterable, Optional


class AuthError(Exception):
    """Base exception class for authentication errors."""

    def __init__(self, message: str = "Authentication error occurred", alias: Optional[str] = None):
        self.message = message
        self.alias = alias
        super().__init__(self.message)


class CredentialNotFoundError(AuthError):
    """Raised when no credential is stored for a given account alias."""

    def __init__(self, alias: str = None):
        message = f"No credential stored for account: {alias}" if alias else "Credential not found"
        super().__init__(message, alias)


class AccountNotFoundError(AuthError):
    """Raised when an alias is not present in the account registry."""

    def __init__(self, alias: str = None):
        message = f"unknown account: {alias}" if alias else "Account not found"
        super().__init__(message, alias)


class DuplicateAliasError(AuthError):
    """Raised when an alias is already taken in the account registry."""

    def __init__(self, alias: str = None):
        message = f"account already exists: {alias}" if alias else "Account already exists"
        super().__init__(message, alias)


class InvalidAliasError(AuthError):
    """Raised when an alias is empty or cannot be used as a storage key."""

    def __init__(self, alias: str = None):
        super().__init__(
            f"invalid alias {alias!r}: alias cannot be empty or contain ':', '/' or '\\'",
            alias,
        )


class InvalidEmailError(AuthError):
    """Raised when an account email address is malformed."""

    def __init__(self, email: str = None, alias: Optional[str] = None):
        super().__init__(f"invalid email {email!r}: must be a valid email address", alias)
        self.email = email


class NoAccountConfiguredError(AuthError):
    """Raised when a command needs an account but none is configured."""

    def __init__(self):
        super().__init__("no account configured: run `goog auth login` to add one")


class AmbiguousAccountError(AuthError):
    """Raised when several accounts exist and none is marked as default."""

    def __init__(self, aliases: Iterable[str]):
        self.aliases = sorted(aliases)
        super().__init__(
            "several accounts are configured and none is the default "
            f"({', '.join(self.aliases)}): pass --account or run `goog account switch <alias>`"
        )


class ReauthRequiredError(AuthError):
    """Raised when a credential can no longer be refreshed without the user."""

    def __init__(self, alias: str = None, reason: Optional[str] = None, original_error=None):
        message = f"Account {alias} needs to sign in again"
        if reason:
            message += f" ({reason})"
        message += f": run `goog auth login --account {alias}`"
        super().__init__(message, alias)
        self.reason = reason
        self.original_error = original_error


class TokenRefreshError(AuthError):
    """Raised when token refresh fails for a reason other than rejection."""

    def __init__(self, message: str = "Failed to refresh token", original_error=None, alias: Optional[str] = None):
        super().__init__(message, alias)
        self.original_error = original_error


class RefreshRejectedError(TokenRefreshError):
    """Raised by a token exchanger when the provider rejects the refresh token."""

    def __init__(self, reason: str = "invalid_grant", original_error=None, alias: Optional[str] = None):
        super().__init__(f"Refresh token rejected: {reason}", original_error, alias)
        self.reason = reason


class StoreUnavailableError(AuthError):
    """Raised when the credential storage backend cannot be reached."""

    def __init__(self, message: str = "Credential storage unavailable", original_error=None, alias: Optional[str] = None):
        super().__init__(message, alias)
        self.original_error = original_error


class OAuthConfigError(AuthError):
    """Raised when the OAuth client configuration is incomplete."""


class AuthorizationFlowError(AuthError):
    """Raised when the OAuth authorization flow fails."""

    def __init__(self, message: str = "Authorization flow failed", original_error=None):
        super().__init__(message)
        self.original_error = original_error


class FlowTimeoutError(AuthorizationFlowError):
    """Raised when the user does not complete consent before the deadline."""

    def __init__(self, timeout: float):
        super().__init__(f"Timed out after {timeout:g}s waiting for the OAuth callback")
        self.timeout = timeout


class FlowDeniedError(AuthorizationFlowError):
    """Raised when the provider redirects back with an error (e.g. access_denied)."""

    def __init__(self, reason: str, description: Optional[str] = None):
        message = f"Authorization denied by provider: {reason}"
        if description:
            message += f" - {description}"
        super().__init__(message)
        self.reason = reason
        self.description = description
