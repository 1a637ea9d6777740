"""
Pydantic models for configured Google accounts.

The registry document is the structured settings object persisted by the
account registry: the account records keyed by alias and the default alias.
"""
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from goog.auth.exceptions import InvalidAliasError, InvalidEmailError
from goog.auth.models import as_utc, dedupe_scopes, utcnow

FORBIDDEN_ALIAS_CHARS = (":", "/", "\\")


def validate_alias(alias: str) -> str:
    """
    Check that an alias can be used as a registry key and storage key.

    Raises:
        InvalidAliasError: If the alias is blank or contains a separator
    """
    if alias is None or not alias.strip():
        raise InvalidAliasError(alias)
    if any(ch in alias for ch in FORBIDDEN_ALIAS_CHARS) or alias.startswith("."):
        raise InvalidAliasError(alias)
    return alias.strip()


def validate_email(email: str, alias: Optional[str] = None) -> str:
    """
    Check that an email address has a ``local@domain`` shape.

    Raises:
        InvalidEmailError: If the address is malformed
    """
    if not email or " " in email:
        raise InvalidEmailError(email, alias)
    parts = email.split("@")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise InvalidEmailError(email, alias)
    return email


class AccountRecord(BaseModel):
    """Persisted fields of one account."""
    email: str = ""
    scopes: List[str] = Field(default_factory=list)
    added_at: datetime = Field(default_factory=utcnow)

    @field_validator("added_at")
    @classmethod
    def normalize_added_at(cls, v: datetime) -> datetime:
        return as_utc(v)

    @field_validator("scopes")
    @classmethod
    def normalize_scopes(cls, v: List[str]) -> List[str]:
        return dedupe_scopes(v)


class Account(BaseModel):
    """A Google account configured for use with the CLI."""
    alias: str
    email: str = ""
    scopes: List[str] = Field(default_factory=list)
    added_at: datetime = Field(default_factory=utcnow)
    is_default: bool = False

    def has_scope(self, scope: str) -> bool:
        return scope in self.scopes

    @classmethod
    def from_record(cls, alias: str, record: AccountRecord, default_alias: Optional[str]) -> "Account":
        return cls(
            alias=alias,
            email=record.email,
            scopes=list(record.scopes),
            added_at=record.added_at,
            is_default=alias == default_alias,
        )


class RegistryDocument(BaseModel):
    """All configured accounts and the default alias."""
    default_account: Optional[str] = None
    accounts: Dict[str, AccountRecord] = Field(default_factory=dict)

    def sorted_aliases(self) -> List[str]:
        return sorted(self.accounts)
