"""
Pydantic models for OAuth credential material.

This module defines the Credential stored per account alias, the read-only
TokenInfo projection used for status reporting, and the OAuth client
configuration, plus conversions to and from google-auth credential objects.
"""
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from google.oauth2.credentials import Credentials
from pydantic import BaseModel, Field, SecretStr, field_validator

from goog.auth.exceptions import OAuthConfigError

DEFAULT_REFRESH_SKEW = timedelta(seconds=60)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to aware UTC; naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def dedupe_scopes(scopes) -> List[str]:
    """Drop duplicates and blanks while keeping the first-seen order."""
    seen = []
    for scope in scopes or []:
        scope = scope.strip()
        if scope and scope not in seen:
            seen.append(scope)
    return seen


class Credential(BaseModel):
    """OAuth2 secret material backing one account alias."""
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    expiry: Optional[datetime] = None
    granted_scopes: List[str] = Field(default_factory=list)

    @field_validator("expiry")
    @classmethod
    def normalize_expiry(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)

    @field_validator("granted_scopes")
    @classmethod
    def normalize_scopes(cls, v: List[str]) -> List[str]:
        return dedupe_scopes(v)

    def remaining(self, now: Optional[datetime] = None) -> Optional[timedelta]:
        """Remaining lifetime of the access token, or None if it has no expiry."""
        if self.expiry is None:
            return None
        return self.expiry - (now or utcnow())

    def is_fresh(self, now: Optional[datetime] = None, skew: timedelta = DEFAULT_REFRESH_SKEW) -> bool:
        """True when the access token stays valid for longer than ``skew``."""
        if not self.access_token:
            return False
        if self.expiry is None:
            return True
        return (now or utcnow()) + skew < self.expiry

    def requires_reauth(self, now: Optional[datetime] = None, skew: timedelta = DEFAULT_REFRESH_SKEW) -> bool:
        """True for the terminal state: stale access token and no refresh token."""
        return not self.refresh_token and not self.is_fresh(now, skew)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data) -> "Credential":
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        return cls.model_validate(json.loads(data))

    def to_google_credentials(self, oauth_config=None) -> Credentials:
        """
        Build a google-auth Credentials object from this credential.

        Args:
            oauth_config: Optional OAuthClientConfig supplying the client id,
                secret and token URI needed for google-auth to refresh.

        Returns:
            Credentials usable with googleapiclient.discovery.build
        """
        expiry = self.expiry
        if expiry is not None:
            # google-auth compares against a naive UTC clock
            expiry = expiry.astimezone(timezone.utc).replace(tzinfo=None)

        kwargs = {}
        if oauth_config is not None:
            kwargs = {
                "token_uri": oauth_config.token_uri,
                "client_id": oauth_config.client_id,
                "client_secret": oauth_config.client_secret_value(),
            }

        return Credentials(
            token=self.access_token,
            refresh_token=self.refresh_token,
            scopes=self.granted_scopes or None,
            expiry=expiry,
            **kwargs,
        )

    @classmethod
    def from_google_credentials(
        cls, credentials: Credentials, granted_scopes: Optional[List[str]] = None
    ) -> "Credential":
        scopes = granted_scopes
        if scopes is None:
            scopes = list(getattr(credentials, "granted_scopes", None) or credentials.scopes or [])
        return cls(
            access_token=credentials.token,
            refresh_token=credentials.refresh_token,
            expiry=credentials.expiry,
            granted_scopes=scopes,
        )


class TokenInfo(BaseModel):
    """Read-only projection of a stored credential for status reporting."""
    alias: str
    has_token: bool = False
    has_refresh_token: bool = False
    token_type: Optional[str] = None
    expiry: Optional[datetime] = None
    remaining: Optional[timedelta] = None
    is_expired: bool = False
    granted_scopes: List[str] = Field(default_factory=list)

    @classmethod
    def from_credential(cls, alias: str, credential: Credential, now: datetime) -> "TokenInfo":
        remaining = credential.remaining(now)
        return cls(
            alias=alias,
            has_token=True,
            has_refresh_token=bool(credential.refresh_token),
            token_type=credential.token_type,
            expiry=credential.expiry,
            remaining=remaining,
            is_expired=remaining is not None and remaining <= timedelta(0),
            granted_scopes=list(credential.granted_scopes),
        )


GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
DEFAULT_REDIRECT_PORT = 8085
DEFAULT_REDIRECT_PATH = "/callback"


class OAuthClientConfig(BaseModel):
    """OAuth client registration used for consent, code exchange and refresh."""
    client_id: str = ""
    client_secret: SecretStr = SecretStr("")
    auth_uri: str = GOOGLE_AUTH_URI
    token_uri: str = GOOGLE_TOKEN_URI
    redirect_port: int = DEFAULT_REDIRECT_PORT
    redirect_path: str = DEFAULT_REDIRECT_PATH

    def client_secret_value(self) -> str:
        return self.client_secret.get_secret_value()

    def validate_complete(self) -> None:
        """
        Check that the client id and secret are configured.

        Raises:
            OAuthConfigError: If either value is missing
        """
        if not self.client_id:
            raise OAuthConfigError(
                "OAuth client id is not set: export GOOG_CLIENT_ID or set auth.client_secrets_file"
            )
        if not self.client_secret_value():
            raise OAuthConfigError(
                "OAuth client secret is not set: export GOOG_CLIENT_SECRET or set auth.client_secrets_file"
            )

    def redirect_uri(self, port: Optional[int] = None) -> str:
        return f"http://localhost:{port or self.redirect_port}{self.redirect_path}"

    def to_client_config(self) -> Dict[str, Any]:
        """Client configuration in the layout of a Google client secrets file."""
        return {
            "installed": {
                "client_id": self.client_id,
                "client_secret": self.client_secret_value(),
                "auth_uri": self.auth_uri,
                "token_uri": self.token_uri,
                "redirect_uris": [self.redirect_uri()],
            }
        }

    @classmethod
    def from_client_secrets_file(cls, path: Union[str, Path], **overrides) -> "OAuthClientConfig":
        """
        Load a client configuration from a downloaded Google client secrets file.

        Raises:
            OAuthConfigError: If the file is missing or malformed
        """
        path = Path(path).expanduser()
        try:
            with open(path, "r") as f:
                client_info = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise OAuthConfigError(f"Cannot read client secrets file {path}: {e}")

        section = client_info.get("installed") or client_info.get("web")
        if not section:
            raise OAuthConfigError(f"Client secrets file {path} has no 'installed' or 'web' section")

        values = {
            "client_id": section.get("client_id", ""),
            "client_secret": SecretStr(section.get("client_secret", "")),
            "auth_uri": section.get("auth_uri", GOOGLE_AUTH_URI),
            "token_uri": section.get("token_uri", GOOGLE_TOKEN_URI),
        }
        values.update(overrides)
        return cls(**values)
