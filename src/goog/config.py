"""
Configuration module for goog.

This module uses Pydantic Settings to handle loading environment variables,
secrets, and application configuration with proper typing and validation.
Every section reads ``GOOG_``-prefixed environment variables, so
``GOOG_CLIENT_ID`` sets ``auth.client_id`` and ``GOOG_CONFIG_DIR`` sets
``app.config_dir``.
"""
import json
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from goog.auth.exceptions import OAuthConfigError
from goog.auth.models import (
    DEFAULT_REDIRECT_PATH,
    DEFAULT_REDIRECT_PORT,
    GOOGLE_AUTH_URI,
    GOOGLE_TOKEN_URI,
    OAuthClientConfig,
)
from goog.auth.scopes import DEFAULT_SCOPES
from goog.utils.paths import default_config_dir, resolve_path

ENV_PREFIX = "GOOG_"
REGISTRY_FILE_NAME = "accounts.json"
TOKEN_DB_FILE_NAME = "tokens.db"
TOKEN_DIR_NAME = "tokens"


class LogLevel(str, Enum):
    """Log levels for the application."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class TokenBackend(str, Enum):
    """Where OAuth credentials are stored."""
    SQLITE = "sqlite"
    FILE = "file"
    KEYRING = "keyring"
    MEMORY = "memory"


class AppSettings(BaseSettings):
    """General application settings."""
    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, extra="ignore")

    log_level: LogLevel = Field(
        default=LogLevel.WARNING,
        description="Logging level",
    )
    config_dir: Path = Field(
        default_factory=default_config_dir,
        description="Directory holding the account registry and token stores",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        if isinstance(v, str):
            return v.upper()
        return v

    @field_validator("config_dir")
    @classmethod
    def expand_config_dir(cls, v: Path) -> Path:
        return Path(v).expanduser()


class AuthSettings(BaseSettings):
    """Authentication settings for Google OAuth."""
    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, extra="ignore")

    client_id: str = Field(
        default="",
        description="OAuth client id of the installed application",
    )
    client_secret: SecretStr = Field(
        default=SecretStr(""),
        description="OAuth client secret of the installed application",
    )
    client_secrets_file: Optional[Path] = Field(
        default=None,
        description="Path to a Google client secrets JSON file (overrides client_id/client_secret)",
    )
    redirect_port: int = Field(
        default=DEFAULT_REDIRECT_PORT,
        description="Local port for the OAuth callback listener (0 picks a free port)",
        ge=0,
        le=65535,
    )
    token_backend: TokenBackend = Field(
        default=TokenBackend.SQLITE,
        description="Credential storage backend",
    )
    token_db_path: Optional[Path] = Field(
        default=None,
        description="Path to the SQLite database for storing tokens",
    )
    token_dir: Optional[Path] = Field(
        default=None,
        description="Directory for encrypted token files (file backend)",
    )
    token_encryption_key: Optional[SecretStr] = Field(
        default=None,
        description="Passphrase for encrypted token files (if None, derived from the host and user)",
    )
    callback_timeout_seconds: float = Field(
        default=300.0,
        description="Seconds to wait for the user to complete consent",
        gt=0,
    )
    refresh_skew_seconds: int = Field(
        default=60,
        description="Refresh tokens this many seconds before they expire",
        ge=0,
        le=3600,
    )
    default_scopes: List[str] = Field(
        default_factory=lambda: list(DEFAULT_SCOPES),
        description="OAuth scopes requested when none are given",
    )

    @property
    def refresh_skew(self) -> timedelta:
        return timedelta(seconds=self.refresh_skew_seconds)

    def oauth_client(self) -> OAuthClientConfig:
        """
        Build the OAuth client configuration.

        Raises:
            OAuthConfigError: If the client secrets file cannot be read
        """
        if self.client_secrets_file:
            return OAuthClientConfig.from_client_secrets_file(
                self.client_secrets_file,
                redirect_port=self.redirect_port,
                redirect_path=DEFAULT_REDIRECT_PATH,
            )
        return OAuthClientConfig(
            client_id=self.client_id,
            client_secret=self.client_secret,
            auth_uri=GOOGLE_AUTH_URI,
            token_uri=GOOGLE_TOKEN_URI,
            redirect_port=self.redirect_port,
            redirect_path=DEFAULT_REDIRECT_PATH,
        )


class Settings(BaseSettings):
    """Root settings class combining all application settings."""
    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    app: AppSettings = Field(default_factory=AppSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)

    @model_validator(mode="after")
    def fill_storage_paths(self) -> "Settings":
        """Place token stores under the config directory unless set explicitly."""
        config_dir = self.app.config_dir
        if self.auth.token_db_path is None:
            self.auth.token_db_path = config_dir / TOKEN_DB_FILE_NAME
        else:
            self.auth.token_db_path = resolve_path(self.auth.token_db_path, config_dir)
        if self.auth.token_dir is None:
            self.auth.token_dir = config_dir / TOKEN_DIR_NAME
        else:
            self.auth.token_dir = resolve_path(self.auth.token_dir, config_dir)
        return self

    @property
    def registry_path(self) -> Path:
        return self.app.config_dir / REGISTRY_FILE_NAME

    @classmethod
    def from_json(cls, file_path: Union[str, Path]) -> "Settings":
        """
        Load settings from a JSON file.

        Raises:
            OAuthConfigError: If the file is missing or not valid JSON
        """
        file_path = Path(file_path).expanduser()
        if not file_path.exists():
            raise OAuthConfigError(f"Config file not found: {file_path}")

        try:
            with open(file_path, "r") as f:
                config_data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise OAuthConfigError(f"Cannot read config file {file_path}: {e}")

        return cls(**config_data)


def load_settings(file_path: Optional[Union[str, Path]] = None) -> Settings:
    """Load settings from a file or environment variables."""
    if file_path:
        return Settings.from_json(file_path)
    return Settings()
