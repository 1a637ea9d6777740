"""
Credential storage module for goog.

This module provides the CredentialStore used to persist one OAuth credential
per account alias, and the storage backends behind it: a SQLite database
(the default), an encrypted file directory for hosts without a usable
keyring, the operating system keyring, and an in-memory backend for tests.

Every backend writes a credential for one alias atomically: a crash in the
middle of a write never leaves a half-written record readable later.
"""
import base64
import getpass
import hashlib
import json
import logging
import os
import socket
import sqlite3
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional, Set, Union

import keyring
import keyring.errors
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import ValidationError

from goog.auth.exceptions import (
    AuthError,
    CredentialNotFoundError,
    StoreUnavailableError,
)
from goog.auth.models import Credential
from goog.utils.paths import ensure_private_dir

# Configure logger
logger = logging.getLogger(__name__)

SERVICE_NAME = "goog-cli"
KEY_PREFIX = "goog"
TOKEN_KEY = "oauth_token"
PBKDF2_ITERATIONS = 100000
SALT_SIZE = 16


class CredentialBackend(ABC):
    """
    Opaque key-value storage for serialized credentials.

    Backends map an alias to the serialized credential bytes. They raise
    StoreUnavailableError when the underlying medium cannot be reached and
    return None / False for absent aliases.
    """

    name = "abstract"

    @abstractmethod
    def read(self, alias: str) -> Optional[bytes]:
        """Return the stored bytes for an alias, or None if absent."""

    @abstractmethod
    def write(self, alias: str, data: bytes) -> None:
        """Atomically replace the stored bytes for an alias."""

    @abstractmethod
    def remove(self, alias: str) -> bool:
        """Delete the record for an alias; return False if it did not exist."""

    @abstractmethod
    def keys(self) -> Set[str]:
        """Return the set of aliases that currently have a record."""


class MemoryBackend(CredentialBackend):
    """In-process backend, used by tests and dry runs."""

    name = "memory"

    def __init__(self):
        self._data: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def read(self, alias: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(alias)

    def write(self, alias: str, data: bytes) -> None:
        with self._lock:
            self._data[alias] = bytes(data)

    def remove(self, alias: str) -> bool:
        with self._lock:
            return self._data.pop(alias, None) is not None

    def keys(self) -> Set[str]:
        with self._lock:
            return set(self._data)


class SQLiteBackend(CredentialBackend):
    """
    Credential storage in a local SQLite database.

    Each alias is one row; every write runs in its own transaction so that
    concurrent CLI processes see either the old or the new credential, and
    the last writer wins.
    """

    name = "sqlite"

    def __init__(self, db_path: Union[str, Path], auto_create: bool = True, timeout: float = 10.0):
        """
        Initialize the SQLite backend.

        Args:
            db_path: Path to the SQLite database file
            auto_create: Whether to create the schema if the database is new
            timeout: Seconds to wait on a lock held by another process

        Raises:
            StoreUnavailableError: If the database cannot be created
        """
        self.db_path = Path(db_path)
        self.timeout = timeout
        self._schema_ready = False

        if auto_create and (not self.db_path.exists() or self.db_path.stat().st_size == 0):
            self._create_database()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """
        Open a connection, commit on success, roll back on error and always close.

        Raises:
            StoreUnavailableError: If the database cannot be opened
        """
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=self.timeout)
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Error connecting to credential database: {e}", e)

        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _create_database(self) -> None:
        """
        Create the credential database schema.

        Raises:
            StoreUnavailableError: If the schema cannot be created
        """
        try:
            # Ensure parent directory exists
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

            with self._connect() as conn:
                conn.executescript("""
                CREATE TABLE IF NOT EXISTS credentials (
                    alias TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
                );
                """)

            if os.name == "posix":
                os.chmod(self.db_path, 0o600)

            self._schema_ready = True
            logger.debug(f"Initialized credential database at {self.db_path}")
        except StoreUnavailableError:
            raise
        except (sqlite3.Error, OSError) as e:
            raise StoreUnavailableError(f"Error creating credential database: {e}", e)

    def read(self, alias: str) -> Optional[bytes]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT payload FROM credentials WHERE alias = ?",
                    (alias,),
                ).fetchone()
        except sqlite3.Error as e:
            if "no such table" in str(e).lower():
                # Database exists but was never initialized
                return None
            raise StoreUnavailableError(f"Error reading credential: {e}", e, alias)

        if row is None:
            return None
        return row["payload"].encode("utf-8")

    def write(self, alias: str, data: bytes) -> None:
        if not self._schema_ready:
            self._create_database()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO credentials (alias, payload)
                    VALUES (?, ?)
                    ON CONFLICT(alias) DO UPDATE SET
                        payload = excluded.payload,
                        updated_at = CURRENT_TIMESTAMP
                    """,
                    (alias, data.decode("utf-8")),
                )
            logger.debug(f"Stored credential row for account: {alias}")
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Error storing credential: {e}", e, alias)

    def remove(self, alias: str) -> bool:
        try:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM credentials WHERE alias = ?", (alias,))
                deleted = cursor.rowcount > 0
        except sqlite3.Error as e:
            if "no such table" in str(e).lower():
                return False
            raise StoreUnavailableError(f"Error deleting credential: {e}", e, alias)

        if deleted:
            logger.debug(f"Deleted credential row for account: {alias}")
        return deleted

    def keys(self) -> Set[str]:
        try:
            with self._connect() as conn:
                rows = conn.execute("SELECT alias FROM credentials").fetchall()
        except sqlite3.Error as e:
            if "no such table" in str(e).lower():
                return set()
            raise StoreUnavailableError(f"Error listing credentials: {e}", e)
        return {row["alias"] for row in rows}


def derive_machine_passphrase() -> str:
    """
    Derive a passphrase bound to this host and user.

    Encrypted credential files copied to another machine or user cannot be
    decrypted with the default passphrase.
    """
    components = ["goog-cli-keyring"]
    try:
        components.append(socket.gethostname())
    except OSError:
        pass
    try:
        components.append(getpass.getuser())
    except (KeyError, OSError):
        pass
    if hasattr(os, "getuid"):
        components.append(str(os.getuid()))
    components.append(str(Path.home()))
    return hashlib.sha256(":".join(components).encode("utf-8")).hexdigest()


class EncryptedFileBackend(CredentialBackend):
    """
    Credential storage as one Fernet-encrypted file per alias.

    The file starts with a random salt, followed by the Fernet token. The
    Fernet key is derived from the passphrase and the salt with PBKDF2.
    """

    name = "file"
    suffix = ".enc"

    def __init__(self, base_dir: Union[str, Path], passphrase: Optional[str] = None):
        self.base_dir = Path(base_dir)
        self.passphrase = passphrase or derive_machine_passphrase()
        try:
            ensure_private_dir(self.base_dir)
        except OSError as e:
            raise StoreUnavailableError(f"Cannot create credential directory {self.base_dir}: {e}", e)

    def _path(self, alias: str) -> Path:
        return self.base_dir / f"{alias}{self.suffix}"

    def _fernet(self, salt: bytes) -> Fernet:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=PBKDF2_ITERATIONS,
        )
        key = base64.urlsafe_b64encode(kdf.derive(self.passphrase.encode("utf-8")))
        return Fernet(key)

    def read(self, alias: str) -> Optional[bytes]:
        path = self._path(alias)
        try:
            content = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StoreUnavailableError(f"Error reading credential file {path}: {e}", e, alias)

        salt, token = content[:SALT_SIZE], content[SALT_SIZE:]
        try:
            return self._fernet(salt).decrypt(token)
        except InvalidToken as e:
            raise StoreUnavailableError(
                f"Cannot decrypt credential file {path}: wrong passphrase or corrupted file", e, alias
            )

    def write(self, alias: str, data: bytes) -> None:
        # A fresh salt for every write
        salt = os.urandom(SALT_SIZE)
        payload = salt + self._fernet(salt).encrypt(data)
        path = self._path(alias)

        tmp_name = None
        try:
            with tempfile.NamedTemporaryFile(
                dir=self.base_dir, prefix=f".{alias}.", suffix=".tmp", delete=False
            ) as tmp:
                tmp_name = tmp.name
                tmp.write(payload)
                tmp.flush()
                os.fsync(tmp.fileno())
            if os.name == "posix":
                os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, path)
            tmp_name = None
            logger.debug(f"Wrote encrypted credential file for account: {alias}")
        except OSError as e:
            raise StoreUnavailableError(f"Error writing credential file {path}: {e}", e, alias)
        finally:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)

    def remove(self, alias: str) -> bool:
        path = self._path(alias)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StoreUnavailableError(f"Error deleting credential file {path}: {e}", e, alias)
        return True

    def keys(self) -> Set[str]:
        try:
            return {p.name[: -len(self.suffix)] for p in self.base_dir.glob(f"*{self.suffix}")}
        except OSError as e:
            raise StoreUnavailableError(f"Error listing credential files: {e}", e)


class KeyringBackend(CredentialBackend):
    """
    Credential storage in the operating system keyring.

    Keyrings cannot enumerate entries, so the set of aliases is kept in an
    index entry next to the credentials.
    """

    name = "keyring"
    index_key = f"{KEY_PREFIX}:__index__"

    def __init__(self, service_name: str = SERVICE_NAME):
        self.service_name = service_name
        self._lock = threading.Lock()

    @staticmethod
    def format_key(alias: str, key: str = TOKEN_KEY) -> str:
        """Namespaced keyring key: ``goog:<alias>:<key>``."""
        return f"{KEY_PREFIX}:{alias}:{key}"

    def _load_index(self) -> Set[str]:
        raw = keyring.get_password(self.service_name, self.index_key)
        if not raw:
            return set()
        try:
            return set(json.loads(raw))
        except (json.JSONDecodeError, TypeError):
            logger.warning("Keyring alias index is corrupted, rebuilding it")
            return set()

    def _save_index(self, aliases: Set[str]) -> None:
        keyring.set_password(self.service_name, self.index_key, json.dumps(sorted(aliases)))

    def read(self, alias: str) -> Optional[bytes]:
        try:
            value = keyring.get_password(self.service_name, self.format_key(alias))
        except keyring.errors.KeyringError as e:
            raise StoreUnavailableError(f"Keyring unavailable: {e}", e, alias)
        if value is None:
            return None
        return value.encode("utf-8")

    def write(self, alias: str, data: bytes) -> None:
        try:
            with self._lock:
                keyring.set_password(self.service_name, self.format_key(alias), data.decode("utf-8"))
                aliases = self._load_index()
                if alias not in aliases:
                    aliases.add(alias)
                    self._save_index(aliases)
        except keyring.errors.KeyringError as e:
            raise StoreUnavailableError(f"Keyring unavailable: {e}", e, alias)

    def remove(self, alias: str) -> bool:
        try:
            with self._lock:
                try:
                    keyring.delete_password(self.service_name, self.format_key(alias))
                    deleted = True
                except keyring.errors.PasswordDeleteError:
                    deleted = False
                aliases = self._load_index()
                if alias in aliases:
                    aliases.discard(alias)
                    self._save_index(aliases)
        except keyring.errors.KeyringError as e:
            raise StoreUnavailableError(f"Keyring unavailable: {e}", e, alias)
        return deleted

    def keys(self) -> Set[str]:
        try:
            return self._load_index()
        except keyring.errors.KeyringError as e:
            raise StoreUnavailableError(f"Keyring unavailable: {e}", e)


class CredentialStore:
    """
    Secure storage for per-account OAuth credentials.

    The store serializes Credential objects and delegates persistence to a
    CredentialBackend. It distinguishes "never configured"
    (CredentialNotFoundError) from "cannot currently reach storage"
    (StoreUnavailableError).
    """

    def __init__(self, backend: CredentialBackend):
        self.backend = backend

    def _call(self, operation: str, alias: Optional[str], func, *args):
        try:
            return func(*args)
        except AuthError as e:
            if e.alias is None:
                e.alias = alias
            raise
        except Exception as e:
            logger.error(f"Credential backend {self.backend.name} failed to {operation}: {e}", exc_info=True)
            raise StoreUnavailableError(f"Failed to {operation} credential: {e}", e, alias)

    def get(self, alias: str) -> Credential:
        """
        Get the credential for an account.

        Args:
            alias: Account alias

        Returns:
            The stored credential

        Raises:
            CredentialNotFoundError: If no credential is stored for the alias
            StoreUnavailableError: If the backend fails or the record is unreadable
        """
        data = self._call("read", alias, self.backend.read, alias)
        if data is None:
            raise CredentialNotFoundError(alias)
        try:
            return Credential.from_json(data)
        except (ValueError, ValidationError) as e:
            raise StoreUnavailableError(f"Stored credential for {alias} is corrupted: {e}", e, alias)

    def put(self, alias: str, credential: Credential) -> None:
        """
        Store or overwrite the credential for an account.

        Raises:
            StoreUnavailableError: If the backend fails
        """
        self._call("write", alias, self.backend.write, alias, credential.to_json().encode("utf-8"))
        logger.debug(f"Stored credential for account: {alias}")

    def delete(self, alias: str) -> None:
        """
        Delete the credential for an account.

        Raises:
            CredentialNotFoundError: If no credential is stored for the alias
            StoreUnavailableError: If the backend fails
        """
        if not self._call("delete", alias, self.backend.remove, alias):
            raise CredentialNotFoundError(alias)
        logger.info(f"Deleted credential for account: {alias}")

    def list(self) -> Set[str]:
        """Return the aliases that have a stored credential."""
        return set(self._call("list", None, self.backend.keys))

    def exists(self, alias: str) -> bool:
        return self._call("read", alias, self.backend.read, alias) is not None


def open_backend(auth_settings) -> CredentialBackend:
    """
    Create the credential backend selected in the auth settings.

    Args:
        auth_settings: AuthSettings from config

    Returns:
        The configured backend
    """
    backend = auth_settings.token_backend.value
    if backend == "sqlite":
        return SQLiteBackend(auth_settings.token_db_path)
    if backend == "file":
        passphrase = None
        if auth_settings.token_encryption_key:
            passphrase = auth_settings.token_encryption_key.get_secret_value()
        return EncryptedFileBackend(auth_settings.token_dir, passphrase)
    if backend == "keyring":
        return KeyringBackend()
    if backend == "memory":
        return MemoryBackend()
    raise ValueError(f"Unknown token backend: {backend}")
