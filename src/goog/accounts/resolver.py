"""
Account resolution for goog commands.

Decides which single account a command operates on, in this order: the
--account flag, the GOOG_ACCOUNT environment variable, the registry's
default account, and finally the only configured account. It never picks
one of several accounts on its own.
"""
import logging
import os
from typing import Mapping, Optional

from goog.accounts.models import Account
from goog.accounts.registry import AccountRegistry
from goog.auth.exceptions import AmbiguousAccountError, NoAccountConfiguredError

# Configure logger
logger = logging.getLogger(__name__)

ENV_ACCOUNT = "GOOG_ACCOUNT"


class AccountResolver:
    """Resolves the account a command should run against."""

    def __init__(self, registry: AccountRegistry, environ: Optional[Mapping[str, str]] = None):
        self.registry = registry
        self.environ = os.environ if environ is None else environ

    def resolve(self, flag_value: Optional[str] = "") -> Account:
        """
        Resolve the account for a command.

        Args:
            flag_value: Value of the --account flag, empty when not given

        Returns:
            The resolved account

        Raises:
            AccountNotFoundError: If an explicitly named alias is unknown
            NoAccountConfiguredError: If no account is configured
            AmbiguousAccountError: If several accounts exist and none is the default
        """
        flag_value = (flag_value or "").strip()
        if flag_value:
            logger.debug(f"Resolving account from flag: {flag_value}")
            return self.registry.get(flag_value)

        env_value = (self.environ.get(ENV_ACCOUNT) or "").strip()
        if env_value:
            logger.debug(f"Resolving account from {ENV_ACCOUNT}: {env_value}")
            return self.registry.get(env_value)

        default = self.registry.default()
        if default is not None:
            return default

        accounts = self.registry.list()
        if not accounts:
            raise NoAccountConfiguredError()
        if len(accounts) == 1:
            logger.debug(f"Using the only configured account: {accounts[0].alias}")
            return accounts[0]
        raise AmbiguousAccountError(a.alias for a in accounts)

