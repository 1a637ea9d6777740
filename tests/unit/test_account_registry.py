"""
Unit tests for the account registry and account resolver
"""
import json
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest.mock import patch

import pytest

from goog.accounts.models import validate_alias, validate_email
from goog.accounts.registry import AccountRegistry, RegistryFile
from goog.accounts.resolver import AccountResolver
from goog.auth.exceptions import (
    AccountNotFoundError,
    AmbiguousAccountError,
    DuplicateAliasError,
    InvalidAliasError,
    InvalidEmailError,
    NoAccountConfiguredError,
    StoreUnavailableError,
)

GMAIL = "https://www.googleapis.com/auth/gmail.readonly"


class TestAccountRegistry(unittest.TestCase):
    """Test cases for registry mutations"""

    def setUp(self):
        self.tmp = TemporaryDirectory()
        self.path = Path(self.tmp.name) / "accounts.json"
        self.registry = AccountRegistry(RegistryFile(self.path))

    def tearDown(self):
        self.tmp.cleanup()

    def test_empty_registry(self):
        self.assertEqual(self.registry.list(), [])
        self.assertIsNone(self.registry.default())
        self.assertFalse(self.path.exists())

    def test_first_account_becomes_default(self):
        work = self.registry.add("work", "me@work.com", [GMAIL])
        personal = self.registry.add("personal", "me@gmail.com", [GMAIL])
        self.assertTrue(work.is_default)
        self.assertFalse(personal.is_default)
        self.assertEqual(self.registry.default().alias, "work")

    def test_list_is_sorted_by_alias(self):
        self.registry.add("work", "me@work.com", [])
        self.registry.add("alpha", "a@example.com", [])
        self.registry.add("personal", "me@gmail.com", [])
        self.assertEqual([a.alias for a in self.registry.list()], ["alpha", "personal", "work"])

    def test_duplicate_alias_rejected(self):
        self.registry.add("work", "me@work.com", [])
        with self.assertRaises(DuplicateAliasError):
            self.registry.add("work", "other@work.com", [])
        self.assertEqual(self.registry.get("work").email, "me@work.com")

    def test_invalid_alias_and_email_rejected(self):
        with self.assertRaises(InvalidAliasError):
            self.registry.add("   ", "me@work.com", [])
        with self.assertRaises(InvalidAliasError):
            self.registry.add("a:b", "me@work.com", [])
        with self.assertRaises(InvalidEmailError):
            self.registry.add("work", "not-an-email", [])
        self.assertEqual(self.registry.list(), [])

    def test_remove_then_get_raises_not_found(self):
        self.registry.add("work", "me@work.com", [])
        self.registry.remove("work")
        with self.assertRaises(AccountNotFoundError) as ctx:
            self.registry.get("work")
        self.assertEqual(ctx.exception.message, "unknown account: work")

    def test_remove_default_promotes_next_sorted_alias(self):
        self.registry.add("work", "me@work.com", [])
        self.registry.add("personal", "me@gmail.com", [])
        self.registry.add("alpha", "a@example.com", [])
        self.registry.switch("personal")

        self.registry.remove("personal")

        self.assertEqual(self.registry.default().alias, "alpha")
        self.assertEqual(sum(a.is_default for a in self.registry.list()), 1)

    def test_remove_last_account_clears_default(self):
        self.registry.add("work", "me@work.com", [])
        self.registry.remove("work")
        self.assertIsNone(self.registry.default())

    def test_remove_unknown_alias(self):
        with self.assertRaises(AccountNotFoundError):
            self.registry.remove("ghost")

    def test_switch_changes_default(self):
        self.registry.add("work", "me@work.com", [])
        self.registry.add("personal", "me@gmail.com", [])
        self.registry.switch("personal")
        defaults = [a.alias for a in self.registry.list() if a.is_default]
        self.assertEqual(defaults, ["personal"])
        with self.assertRaises(AccountNotFoundError):
            self.registry.switch("ghost")

    def test_rename_keeps_record_and_default(self):
        work = self.registry.add("work", "me@work.com", [GMAIL])
        self.registry.add("personal", "me@gmail.com", [])

        renamed = self.registry.rename("work", "office")

        self.assertEqual(renamed.email, "me@work.com")
        self.assertEqual(renamed.added_at, work.added_at)
        self.assertTrue(renamed.is_default)
        self.assertFalse(self.registry.contains("work"))
        with self.assertRaises(DuplicateAliasError):
            self.registry.rename("office", "personal")
        with self.assertRaises(AccountNotFoundError):
            self.registry.rename("work", "job")

    def test_update_email_and_scopes(self):
        self.registry.add("work", "me@work.com", [GMAIL])
        self.registry.update_scopes("work", [GMAIL, GMAIL, "openid"])
        updated = self.registry.update_email("work", "new@work.com")
        self.assertEqual(updated.scopes, [GMAIL, "openid"])
        self.assertEqual(updated.email, "new@work.com")

    def test_changes_are_persisted(self):
        self.registry.add("work", "me@work.com", [GMAIL])
        self.registry.add("personal", "me@gmail.com", [])
        self.registry.switch("personal")

        reloaded = AccountRegistry(RegistryFile(self.path))
        self.assertEqual(reloaded.default().alias, "personal")
        self.assertEqual(reloaded.get("work").scopes, [GMAIL])

        with open(self.path) as f:
            data = json.load(f)
        self.assertEqual(data["default_account"], "personal")
        self.assertEqual(set(data["accounts"]), {"work", "personal"})

    def test_registry_file_is_private(self):
        self.registry.add("work", "me@work.com", [])
        self.assertEqual(self.path.stat().st_mode & 0o777, 0o600)


def test_failed_save_leaves_previous_document(tmp_path):
    path = tmp_path / "accounts.json"
    registry = AccountRegistry(RegistryFile(path))
    registry.add("work", "me@work.com", [])
    before = path.read_text()

    with patch("goog.accounts.registry.os.replace", side_effect=OSError("disk full")):
        with pytest.raises(StoreUnavailableError):
            registry.add("personal", "me@gmail.com", [])

    assert path.read_text() == before
    assert [p.name for p in tmp_path.iterdir()] == ["accounts.json"]
    assert AccountRegistry(RegistryFile(path)).aliases() == ["work"]


def test_corrupt_registry_is_store_unavailable(tmp_path):
    path = tmp_path / "accounts.json"
    path.write_text("{broken")
    with pytest.raises(StoreUnavailableError):
        AccountRegistry(RegistryFile(path)).list()


def test_added_at_is_utc(registry):
    account = registry.add("work", "me@work.com", [])
    assert account.added_at.tzinfo is not None
    assert account.added_at.utcoffset().total_seconds() == 0


@pytest.mark.parametrize("alias", ["work", "my-account", "team_2"])
def test_valid_aliases(alias):
    assert validate_alias(alias) == alias


@pytest.mark.parametrize("alias", ["", " ", "a/b", "a\\b", "x:y", ".hidden"])
def test_invalid_aliases(alias):
    with pytest.raises(InvalidAliasError):
        validate_alias(alias)


@pytest.mark.parametrize("email", ["a@", "@b.com", "a b@c.com", "a@b@c"])
def test_invalid_emails(email):
    with pytest.raises(InvalidEmailError):
        validate_email(email)


@pytest.fixture
def work_and_personal(registry):
    registry.add("work", "me@work.com", [GMAIL])
    registry.add("personal", "me@gmail.com", [GMAIL])
    return registry


def test_resolver_flag_and_default(work_and_personal):
    resolver = AccountResolver(work_and_personal, environ={})

    assert resolver.resolve("personal").alias == "personal"
    assert resolver.resolve("").alias == "work"
    with pytest.raises(AccountNotFoundError) as exc_info:
        resolver.resolve("missing")
    assert exc_info.value.message == "unknown account: missing"


def test_resolver_switch_then_resolve(work_and_personal):
    resolver = AccountResolver(work_and_personal, environ={})
    work_and_personal.switch("personal")
    assert resolver.resolve("").alias == "personal"


def test_resolver_environment_variable(work_and_personal):
    resolver = AccountResolver(work_and_personal, environ={"GOOG_ACCOUNT": "personal"})
    assert resolver.resolve("").alias == "personal"
    # The flag wins over the environment
    assert resolver.resolve("work").alias == "work"

    resolver = AccountResolver(work_and_personal, environ={"GOOG_ACCOUNT": "ghost"})
    with pytest.raises(AccountNotFoundError):
        resolver.resolve()


def test_resolver_no_accounts(registry):
    with pytest.raises(NoAccountConfiguredError):
        AccountResolver(registry, environ={}).resolve("")


def test_resolver_single_account_without_default(tmp_path):
    path = tmp_path / "accounts.json"
    path.write_text(json.dumps({
        "default_account": None,
        "accounts": {"solo": {"email": "solo@example.com", "scopes": [], "added_at": "2024-01-01T00:00:00Z"}},
    }))
    registry = AccountRegistry(RegistryFile(path))
    assert AccountResolver(registry, environ={}).resolve().alias == "solo"


def test_resolver_several_accounts_without_default(tmp_path):
    path = tmp_path / "accounts.json"
    record = {"email": "x@example.com", "scopes": [], "added_at": "2024-01-01T00:00:00Z"}
    path.write_text(json.dumps({"default_account": None, "accounts": {"b": record, "a": record}}))
    registry = AccountRegistry(RegistryFile(path))

    with pytest.raises(AmbiguousAccountError) as exc_info:
        AccountResolver(registry, environ={}).resolve("")
    assert exc_info.value.aliases == ["a", "b"]
