#!/usr/bin/env python3
"""
Command-line interface for goog.

This module provides the ``goog`` command using Typer: ``goog auth`` signs
accounts in and out and manages their tokens, ``goog account`` manages the
configured accounts and the default one.
"""
import asyncio
import json
import logging
import sys
import webbrowser
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Coroutine, Iterator, List, Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from goog import __version__
from goog.accounts.registry import AccountRegistry, RegistryFile
from goog.accounts.resolver import AccountResolver
from goog.accounts.service import AccountService
from goog.auth.exceptions import AuthError
from goog.auth.flow import ManualCodeReceiver, OAuthFlowRunner
from goog.auth.models import OAuthClientConfig, TokenInfo
from goog.auth.scopes import parse_scopes
from goog.auth.store import CredentialStore, open_backend
from goog.auth.tokens import GoogleTokenExchanger, TokenManager
from goog.config import LogLevel, Settings, load_settings

DEFAULT_LOGIN_ALIAS = "default"

# Create Typer app
app = typer.Typer(
    name="goog",
    help="Google Workspace from the command line, for one or many accounts",
    add_completion=False,
    no_args_is_help=True,
)
auth_app = typer.Typer(help="Sign in to Google and manage access tokens", no_args_is_help=True)
account_app = typer.Typer(help="Manage configured Google accounts", no_args_is_help=True)
app.add_typer(auth_app, name="auth")
app.add_typer(account_app, name="account")

# Rich console for pretty output
console = Console()

# Configure logger
logger = logging.getLogger(__name__)


def run_async(coro: Coroutine) -> Any:
    """
    Run a coroutine to completion from a synchronous CLI command.

    Raises:
        RuntimeError: If called while an event loop is already running
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    coro.close()
    raise RuntimeError("run_async() cannot be called from a running event loop")


def _notify(message: str) -> None:
    # soft_wrap keeps long consent URLs on one line so they can be copied
    console.print(message, soft_wrap=True, markup=False, highlight=False)


class Dependencies:
    """
    Collaborators for one CLI invocation.

    Built from Settings on first use; tests pass in fakes instead.
    """

    def __init__(
        self,
        settings: Settings,
        registry: Optional[AccountRegistry] = None,
        token_manager: Optional[TokenManager] = None,
        flow_runner_factory: Optional[Callable[[bool, float], OAuthFlowRunner]] = None,
        resolver: Optional[AccountResolver] = None,
    ):
        self.settings = settings
        self._registry = registry
        self._token_manager = token_manager
        self._oauth_config: Optional[OAuthClientConfig] = None
        self._resolver = resolver
        self.flow_runner_factory = flow_runner_factory or self._build_flow_runner

    @property
    def registry(self) -> AccountRegistry:
        if self._registry is None:
            self._registry = AccountRegistry(RegistryFile(self.settings.registry_path))
        return self._registry

    @property
    def oauth_config(self) -> OAuthClientConfig:
        if self._oauth_config is None:
            self._oauth_config = self.settings.auth.oauth_client()
        return self._oauth_config

    @property
    def token_manager(self) -> TokenManager:
        if self._token_manager is None:
            store = CredentialStore(open_backend(self.settings.auth))
            self._token_manager = TokenManager(
                store,
                GoogleTokenExchanger(),
                self.oauth_config,
                refresh_skew=self.settings.auth.refresh_skew,
            )
        return self._token_manager

    @property
    def resolver(self) -> AccountResolver:
        if self._resolver is None:
            self._resolver = AccountResolver(self.registry)
        return self._resolver

    def _build_flow_runner(self, no_browser: bool, timeout: float) -> OAuthFlowRunner:
        receiver_factory = None
        browser_opener = webbrowser.open
        if no_browser:
            def receiver_factory(config: OAuthClientConfig) -> ManualCodeReceiver:
                return ManualCodeReceiver(port=config.redirect_port, path=config.redirect_path)
            browser_opener = None
        return OAuthFlowRunner(
            self.oauth_config,
            receiver_factory=receiver_factory,
            browser_opener=browser_opener,
            timeout=timeout,
            notify=_notify,
        )

    def service(self, flow_runner: Optional[OAuthFlowRunner] = None) -> AccountService:
        return AccountService(
            self.registry,
            self.token_manager,
            flow_runner=flow_runner,
            resolver=self.resolver,
            default_scopes=self.settings.auth.default_scopes,
        )


def _deps(ctx: typer.Context) -> Dependencies:
    return ctx.obj


@contextmanager
def _errors() -> Iterator[None]:
    """Print goog errors as ``Error: <message>`` and exit with status 1."""
    try:
        yield
    except AuthError as e:
        logger.debug(f"Command failed: {e.message}", exc_info=True)
        console.print(f"[bold red]Error:[/bold red] {escape(e.message)}", soft_wrap=True)
        raise typer.Exit(code=1)


def _format_remaining(info: TokenInfo) -> str:
    if info.remaining is None:
        return "no expiry"
    seconds = int(info.remaining.total_seconds())
    if seconds <= 0:
        return "expired"
    minutes, seconds = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m {seconds}s"


def _account_panel(account, info: Optional[TokenInfo] = None) -> Panel:
    lines = [
        f"[bold]Alias:[/bold]   {escape(account.alias)}",
        f"[bold]Email:[/bold]   {escape(account.email or '-')}",
        f"[bold]Default:[/bold] {'yes' if account.is_default else 'no'}",
        f"[bold]Added:[/bold]   {account.added_at.isoformat(timespec='seconds')}",
    ]
    if info is not None:
        if not info.has_token:
            lines.append("[bold]Token:[/bold]   [red]not found[/red] (run goog auth login)")
        else:
            expiry = info.expiry.isoformat(timespec="seconds") if info.expiry else "N/A"
            if info.is_expired:
                state = "[yellow]expired[/yellow]"
                if info.has_refresh_token:
                    state += " (refreshed on next use)"
            else:
                state = f"[green]active[/green] ({_format_remaining(info)} left)"
            lines.append(f"[bold]Token:[/bold]   {state}")
            lines.append(f"[bold]Expires:[/bold] {expiry}")
            lines.append(
                f"[bold]Refresh:[/bold] {'present' if info.has_refresh_token else '[red]missing[/red]'}"
            )
        scopes = info.granted_scopes or account.scopes
    else:
        scopes = account.scopes
    if scopes:
        lines.append("[bold]Scopes:[/bold]")
        lines.extend(f"  - {escape(scope)}" for scope in scopes)
    return Panel.fit("\n".join(lines), title=escape(account.alias), border_style="cyan")


@app.callback()
def main_callback(
    ctx: typer.Context,
    config_file: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to a JSON config file",
        exists=True,
        dir_okay=False,
        readable=True,
    ),
    log_level: Optional[LogLevel] = typer.Option(
        None,
        "--log-level",
        "-l",
        help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
        case_sensitive=False,
    ),
) -> None:
    """Google Workspace from the command line."""
    if ctx.obj is None:
        load_dotenv()
        try:
            settings = load_settings(config_file)
        except AuthError as e:
            console.print(f"[bold red]Error:[/bold red] {escape(e.message)}", soft_wrap=True)
            raise typer.Exit(code=1)
        ctx.obj = Dependencies(settings)

    settings = _deps(ctx).settings
    if log_level:
        settings.app.log_level = log_level
    logging.basicConfig(
        level=getattr(logging, settings.app.log_level.value),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@auth_app.command("login")
def auth_login(
    ctx: typer.Context,
    account: Optional[str] = typer.Option(None, "--account", "-a", help="Alias for the account"),
    scopes: Optional[List[str]] = typer.Option(
        None, "--scopes", "-s", help="Scopes to request, e.g. gmail.send,calendar (comma-separated)"
    ),
    no_browser: bool = typer.Option(
        False, "--no-browser", help="Do not open a browser; paste the redirect URL instead"
    ),
    timeout: Optional[float] = typer.Option(
        None, "--timeout", help="Seconds to wait for consent", min=1
    ),
) -> None:
    """Sign in to a Google account and store its credentials."""
    deps = _deps(ctx)
    alias = account or DEFAULT_LOGIN_ALIAS
    with _errors():
        runner = deps.flow_runner_factory(
            no_browser, timeout or deps.settings.auth.callback_timeout_seconds
        )
        service = deps.service(runner)
        requested = parse_scopes(scopes) if scopes else None
        acc = run_async(service.login(alias, requested))

    console.print(f"[green]✓ Logged in as {escape(acc.email)}[/green]")
    console.print(f"Account alias: [cyan]{escape(acc.alias)}[/cyan]")
    if acc.is_default:
        console.print("This account is the default.")


@auth_app.command("logout")
def auth_logout(
    ctx: typer.Context,
    account: Optional[str] = typer.Option(None, "--account", "-a", help="Account alias"),
    remove: bool = typer.Option(False, "--remove", help="Also remove the account from goog"),
) -> None:
    """Delete the stored credentials of an account."""
    deps = _deps(ctx)
    with _errors():
        service = deps.service()
        acc = service.resolve_account(account)
        deleted = run_async(service.logout(acc.alias, remove_account=remove))

    if deleted:
        console.print(f"[green]✓ Logged out of {escape(acc.alias)} ({escape(acc.email)})[/green]")
    else:
        console.print(f"[yellow]No stored credentials for {escape(acc.alias)}[/yellow]")
    if remove:
        console.print(f"Removed account {escape(acc.alias)}")


@auth_app.command("status")
def auth_status(
    ctx: typer.Context,
    account: Optional[str] = typer.Option(None, "--account", "-a", help="Account alias"),
    refresh: bool = typer.Option(False, "--refresh", help="Refresh the token before showing the status"),
) -> None:
    """Show the account and token status."""
    deps = _deps(ctx)
    with _errors():
        service = deps.service()
        acc = service.resolve_account(account)
        token_manager = service.get_token_manager()

        async def collect() -> TokenInfo:
            if refresh:
                await token_manager.refresh_token(acc.alias)
            return await token_manager.get_token_info(acc.alias)

        info = run_async(collect())

    console.print(_account_panel(acc, info))


@auth_app.command("refresh")
def auth_refresh(
    ctx: typer.Context,
    account: Optional[str] = typer.Option(None, "--account", "-a", help="Account alias"),
) -> None:
    """Refresh the access token now, even if it is still valid."""
    deps = _deps(ctx)
    with _errors():
        service = deps.service()
        acc = service.resolve_account(account)
        credential = run_async(service.get_token_manager().refresh_token(acc.alias))

    console.print(f"[green]✓ Refreshed token for {escape(acc.alias)}[/green]")
    if credential.expiry:
        console.print(f"New expiry: {credential.expiry.isoformat(timespec='seconds')}")


@account_app.command("list")
def account_list(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="Print the accounts as JSON"),
) -> None:
    """List all configured accounts."""
    deps = _deps(ctx)
    with _errors():
        accounts = deps.service().list()

    if as_json:
        payload = [acc.model_dump(mode="json") for acc in accounts]
        typer.echo(json.dumps(payload, indent=2))
        return

    if not accounts:
        console.print("No accounts configured.")
        console.print("Run [bold]goog auth login[/bold] to add an account.")
        return

    table = Table(title="Accounts")
    table.add_column("Alias", style="cyan")
    table.add_column("Email", style="green")
    table.add_column("Default", style="yellow")
    table.add_column("Added", style="magenta")

    for acc in accounts:
        table.add_row(
            escape(acc.alias),
            escape(acc.email or "-"),
            "*" if acc.is_default else "",
            acc.added_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


@account_app.command("show")
def account_show(
    ctx: typer.Context,
    account: Optional[str] = typer.Option(None, "--account", "-a", help="Account alias"),
) -> None:
    """Show the account commands run against."""
    deps = _deps(ctx)
    with _errors():
        service = deps.service()
        acc = service.resolve_account(account) if account else service.show()
        info = run_async(service.get_token_manager().get_token_info(acc.alias))

    console.print(_account_panel(acc, info))


@account_app.command("add")
def account_add(
    ctx: typer.Context,
    alias: str = typer.Argument(..., help="Alias for the new account"),
    scopes: Optional[List[str]] = typer.Option(
        None, "--scopes", "-s", help="Scopes to request (comma-separated)"
    ),
    no_browser: bool = typer.Option(False, "--no-browser", help="Paste the redirect URL instead"),
) -> None:
    """Add a new Google account."""
    deps = _deps(ctx)
    with _errors():
        runner = deps.flow_runner_factory(no_browser, deps.settings.auth.callback_timeout_seconds)
        requested = parse_scopes(scopes) if scopes else None
        acc = run_async(deps.service(runner).add(alias, requested))

    console.print(f"[green]✓ Added account {escape(acc.alias)} ({escape(acc.email)})[/green]")
    if acc.is_default:
        console.print("This account is the default.")


@account_app.command("switch")
def account_switch(
    ctx: typer.Context,
    alias: str = typer.Argument(..., help="Alias of the account to make default"),
) -> None:
    """Set the default account."""
    deps = _deps(ctx)
    with _errors():
        service = deps.service()
        service.switch(alias)
        acc = service.resolve_account(alias)

    suffix = f" ({escape(acc.email)})" if acc.email else ""
    console.print(f"Switched to account [cyan]{escape(alias)}[/cyan]{suffix}")


@account_app.command("rename")
def account_rename(
    ctx: typer.Context,
    old_alias: str = typer.Argument(..., help="Current alias"),
    new_alias: str = typer.Argument(..., help="New alias"),
) -> None:
    """Rename an account."""
    deps = _deps(ctx)
    with _errors():
        run_async(deps.service().rename(old_alias, new_alias))

    console.print(f"Renamed account [cyan]{escape(old_alias)}[/cyan] to [cyan]{escape(new_alias)}[/cyan]")


@account_app.command("remove")
def account_remove(
    ctx: typer.Context,
    alias: str = typer.Argument(..., help="Alias of the account to remove"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Remove an account and its stored credentials."""
    deps = _deps(ctx)
    with _errors():
        service = deps.service()
        acc = service.resolve_account(alias)
        if not yes:
            typer.confirm(f"Remove account {acc.alias} ({acc.email})?", abort=True)
        run_async(service.remove(acc.alias))

    console.print(f"[green]✓ Removed account {escape(acc.alias)}[/green]")


@app.command("version")
def show_version(ctx: typer.Context) -> None:
    """Show version information."""
    settings = _deps(ctx).settings

    table = Table(title=f"goog v{__version__}")
    table.add_column("Component", style="cyan")
    table.add_column("Version/Status", style="green")

    table.add_row("Python", sys.version.split()[0])
    table.add_row("Config dir", str(settings.app.config_dir))
    table.add_row("Token backend", settings.auth.token_backend.value)
    table.add_row("Log Level", settings.app.log_level.value)
    table.add_row(
        "OAuth client",
        "Configured" if settings.auth.client_id or settings.auth.client_secrets_file else "Not configured",
    )

    console.print(table)


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
