"""
Path utility module for goog.

This module resolves the per-user configuration directory that holds the
account registry and the default token stores.
"""
import os
import sys
from pathlib import Path
from typing import Mapping, Optional, Union

APP_DIR_NAME = "goog"


def default_config_dir(environ: Optional[Mapping[str, str]] = None, platform: Optional[str] = None) -> Path:
    """
    Returns the platform's per-user configuration directory for goog.

    - Linux and other Unixes: ``$XDG_CONFIG_HOME/goog`` or ``~/.config/goog``
    - macOS: ``~/Library/Application Support/goog``
    - Windows: ``%APPDATA%\\goog``
    """
    environ = os.environ if environ is None else environ
    platform = platform or sys.platform

    if platform.startswith("win"):
        appdata = environ.get("APPDATA")
        base = Path(appdata) if appdata else Path.home() / "AppData" / "Roaming"
        return base / APP_DIR_NAME
    if platform == "darwin":
        return Path.home() / "Library" / "Application Support" / APP_DIR_NAME

    xdg = environ.get("XDG_CONFIG_HOME")
    base = Path(xdg) if xdg else Path.home() / ".config"
    return base / APP_DIR_NAME


def resolve_path(path: Union[str, Path], base_path: Path) -> Path:
    """
    Resolves a given path relative to a base path.

    Absolute paths and ``~`` paths are returned expanded; relative paths are
    joined onto ``base_path``.
    """
    p = Path(path).expanduser()
    if p.is_absolute():
        return p
    return base_path / p


def ensure_private_dir(path: Path) -> Path:
    """Create a directory readable only by the current user."""
    path.mkdir(parents=True, exist_ok=True)
    if os.name == "posix":
        os.chmod(path, 0o700)
    return path
