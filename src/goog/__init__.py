"""
goog

A command-line companion for Google Workspace that keeps OAuth2 credentials
for several Google accounts side by side: each account has an alias, one
account is the default, and access tokens are refreshed on demand.
"""

__version__ = "0.1.0"
__license__ = "MIT"

# Version information tuple (major, minor, patch)
VERSION = tuple(map(int, __version__.split(".")))

# Import key components for easier access
from goog.config import Settings, load_settings
from goog.auth import AuthError, CredentialStore, TokenManager
from goog.accounts import AccountService


# Expose main entry point
def run():
    """Run the goog command-line interface."""
    from goog.cli import main
    main()
