"""
OAuth authorization flow for goog.

This module drives the three-legged authorization-code flow used by
`goog auth login`: it builds the consent URL (with PKCE), waits for the
provider to redirect back to a local callback listener or for the user to
paste the redirect, and exchanges the authorization code for the initial
credential of an account.
"""
import asyncio
import html
import logging
import os
import sys
import threading
import webbrowser
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

from aiohttp import web
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from pydantic import BaseModel, Field

from goog.auth.exceptions import (
    AuthError,
    AuthorizationFlowError,
    FlowDeniedError,
    FlowTimeoutError,
)
from goog.auth.models import (
    DEFAULT_REDIRECT_PORT,
    Credential,
    OAuthClientConfig,
    dedupe_scopes,
)

# Configure logger
logger = logging.getLogger(__name__)

DEFAULT_CALLBACK_TIMEOUT = 300.0

# oauthlib rejects a token whose scopes differ from the request; partial consent is allowed
os.environ.setdefault("OAUTHLIB_RELAX_TOKEN_SCOPE", "1")

SUCCESS_PAGE = """<!DOCTYPE html>
<html>
<head><title>Authentication Successful</title></head>
<body>
<h1>Authentication Successful!</h1>
<p>You can close this window and return to the terminal.</p>
</body>
</html>"""

FAILURE_PAGE = """<!DOCTYPE html>
<html>
<head><title>Authentication Failed</title></head>
<body>
<h1>Authentication Failed</h1>
<p>{reason}</p>
<p>You can close this window.</p>
</body>
</html>"""


class FlowState(str, Enum):
    """States of one authorization flow run."""
    IDLE = "idle"
    AWAITING_CONSENT = "awaiting_consent"
    CODE_RECEIVED = "code_received"
    EXCHANGING = "exchanging"
    SUCCESS = "success"
    FAILED = "failed"


class FlowResult(BaseModel):
    """Outcome of a successful authorization flow."""
    email: str
    credential: Credential
    requested_scopes: List[str] = Field(default_factory=list)

    @property
    def granted_scopes(self) -> List[str]:
        return self.credential.granted_scopes

    @property
    def missing_scopes(self) -> List[str]:
        """Requested scopes the user did not grant."""
        return [s for s in self.requested_scopes if s not in self.credential.granted_scopes]


class CallbackServer:
    """
    Local HTTP listener receiving the OAuth redirect.

    Only the first request to the callback path is honoured; its query
    parameters are handed to wait_for_callback().
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 0, path: str = "/callback"):
        self.host = host
        self.port = port
        self.path = path
        self._runner: Optional[web.AppRunner] = None
        self._result: Optional[asyncio.Future] = None

    @property
    def running(self) -> bool:
        return self._runner is not None

    async def start(self) -> str:
        """
        Start listening and return the server base URL.

        If the configured port is busy, an ephemeral port is used instead.
        """
        self._result = asyncio.get_running_loop().create_future()

        app = web.Application()
        app.router.add_get(self.path, self._handle_callback)
        runner = web.AppRunner(app, access_log=None)
        await runner.setup()

        try:
            await web.TCPSite(runner, self.host, self.port).start()
        except OSError as e:
            if self.port == 0:
                await runner.cleanup()
                raise AuthorizationFlowError(f"Failed to start callback server: {e}", e)
            logger.debug(f"Port {self.port} unavailable ({e}), using an ephemeral port")
            try:
                await web.TCPSite(runner, self.host, 0).start()
            except OSError as e2:
                await runner.cleanup()
                raise AuthorizationFlowError(f"Failed to start callback server: {e2}", e2)

        self._runner = runner
        self.port = runner.addresses[0][1]
        logger.debug(f"OAuth callback server listening on port {self.port}")
        return f"http://{self.host}:{self.port}"

    async def _handle_callback(self, request: web.Request) -> web.Response:
        query = request.query
        params = {
            "code": query.get("code", ""),
            "state": query.get("state", ""),
            "error": query.get("error", ""),
            "error_description": query.get("error_description", ""),
        }

        if self._result is not None and not self._result.done():
            self._result.set_result(params)

        if params["error"]:
            reason = params["error"]
            if params["error_description"]:
                reason += f" - {params['error_description']}"
            return web.Response(
                text=FAILURE_PAGE.format(reason=html.escape(reason)),
                status=400,
                content_type="text/html",
            )
        if not params["code"]:
            return web.Response(
                text=FAILURE_PAGE.format(reason="No authorization code received."),
                status=400,
                content_type="text/html",
            )
        return web.Response(text=SUCCESS_PAGE, content_type="text/html")

    async def wait_for_callback(self) -> Dict[str, str]:
        """Block until the provider redirect arrives and return its query parameters."""
        if self._result is None:
            raise AuthorizationFlowError("Callback server was not started")
        return await self._result

    async def stop(self) -> None:
        """Release the listening socket. Safe to call more than once."""
        runner, self._runner = self._runner, None
        if runner is not None:
            await runner.cleanup()
            logger.debug("OAuth callback server stopped")


PASTE_PROMPT = "Paste the URL you were redirected to (or the code)"


def read_pasted_line(message: str) -> str:
    """
    Prompt on stderr and read one line from the stdin file descriptor.

    The descriptor is read directly so that a prompt abandoned after a
    timeout holds no lock on sys.stdin while the interpreter shuts down.
    """
    sys.stderr.write(f"{message}: ")
    sys.stderr.flush()
    data = b""
    while b"\n" not in data:
        chunk = os.read(sys.stdin.fileno(), 4096)
        if not chunk:
            break
        data += chunk
    return data.decode("utf-8", errors="replace").split("\n", 1)[0]


def _settle(future: asyncio.Future, result: Optional[str], error: Optional[Exception]) -> None:
    if future.done():
        return
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(result)


class ManualCodeReceiver:
    """
    Fallback for hosts without a browser: the user pastes the redirect.

    The user opens the consent URL on any device, then pastes either the
    full URL the browser was redirected to or just the ``code`` value.
    """

    def __init__(
        self,
        prompt: Callable[[str], str] = read_pasted_line,
        port: int = DEFAULT_REDIRECT_PORT,
        path: str = "/callback",
    ):
        self.prompt = prompt
        self.port = port
        self.path = path

    async def start(self) -> str:
        return f"http://localhost:{self.port}"

    async def wait_for_callback(self) -> Dict[str, str]:
        """
        Ask for the pasted redirect without blocking the event loop.

        The prompt runs in a daemon thread rather than the default executor:
        after a timeout the thread may stay blocked reading stdin, and it
        must not keep the process alive.
        """
        loop = asyncio.get_running_loop()
        answer = loop.create_future()

        def ask() -> None:
            try:
                result, error = self.prompt(PASTE_PROMPT), None
            except Exception as e:
                result, error = None, e
            try:
                loop.call_soon_threadsafe(_settle, answer, result, error)
            except RuntimeError:
                # The loop is gone after a timeout; nobody is waiting anymore
                logger.debug("Pasted redirect arrived after the login flow ended")

        threading.Thread(target=ask, name="goog-paste-prompt", daemon=True).start()
        return parse_redirect(await answer)

    async def stop(self) -> None:
        return None


def parse_redirect(answer: str) -> Dict[str, str]:
    """Turn a pasted redirect URL or bare authorization code into callback parameters."""
    answer = (answer or "").strip()
    if not answer:
        return {"code": ""}
    if "://" not in answer and "code=" not in answer and "error=" not in answer:
        return {"code": answer}

    query = urlparse(answer).query if "://" in answer else answer.lstrip("?")
    values = parse_qs(query)
    params = {key: values[key][0] for key in ("code", "state", "error", "error_description") if key in values}
    params.setdefault("code", "")
    return params


class UserInfoFetcher:
    """Looks up the email address of a freshly authorized account."""

    async def fetch_email(self, credentials: Credentials) -> str:
        """
        Get the account email from Google's userinfo API.

        Raises:
            AuthorizationFlowError: If the email cannot be determined
        """
        try:
            service = await asyncio.to_thread(
                build, "oauth2", "v2", credentials=credentials, cache_discovery=False
            )
            user_info = await asyncio.to_thread(service.userinfo().get().execute)
        except Exception as e:
            raise AuthorizationFlowError(f"Failed to get user email: {e}", e)

        email = user_info.get("email")
        if not email:
            raise AuthorizationFlowError("No email in userinfo response")
        return email


def _granted_scopes(token: Dict[str, Any], requested: List[str]) -> List[str]:
    scope = token.get("scope")
    if scope is None:
        return list(requested)
    if isinstance(scope, str):
        scope = scope.split()
    return dedupe_scopes(scope)


class OAuthFlowRunner:
    """
    Runs the OAuth2 authorization-code flow with PKCE.

    The runner moves through FlowState values and exposes the current one as
    ``state``. Waiting for consent is bounded by ``timeout``; the callback
    listener is released on every exit path.
    """

    def __init__(
        self,
        oauth_config: OAuthClientConfig,
        receiver_factory: Optional[Callable[[OAuthClientConfig], Any]] = None,
        browser_opener: Optional[Callable[[str], Any]] = webbrowser.open,
        user_info_fetcher: Optional[UserInfoFetcher] = None,
        timeout: float = DEFAULT_CALLBACK_TIMEOUT,
        notify: Callable[[str], None] = print,
        flow_factory: Optional[Callable[[List[str], str], Flow]] = None,
    ):
        """
        Initialize the flow runner.

        Args:
            oauth_config: OAuth client registration
            receiver_factory: Builds the callback receiver (defaults to a local CallbackServer)
            browser_opener: Opens the consent URL; None to only print it
            user_info_fetcher: Resolves the account email after the exchange
            timeout: Seconds to wait for the user to finish consent
            notify: Shows instructions to the user
            flow_factory: Builds the google_auth_oauthlib Flow for (scopes, redirect_uri)
        """
        self.oauth_config = oauth_config
        self.receiver_factory = receiver_factory or self._default_receiver
        self.browser_opener = browser_opener
        self.user_info_fetcher = user_info_fetcher or UserInfoFetcher()
        self.timeout = timeout
        self.notify = notify
        self.flow_factory = flow_factory or self._build_flow
        self.state = FlowState.IDLE

    @staticmethod
    def _default_receiver(oauth_config: OAuthClientConfig) -> CallbackServer:
        return CallbackServer(port=oauth_config.redirect_port, path=oauth_config.redirect_path)

    def _build_flow(self, scopes: List[str], redirect_uri: str) -> Flow:
        return Flow.from_client_config(
            self.oauth_config.to_client_config(),
            scopes=scopes,
            redirect_uri=redirect_uri,
            autogenerate_code_verifier=True,
        )

    def _transition(self, state: FlowState) -> None:
        logger.debug(f"OAuth flow: {self.state.value} -> {state.value}")
        self.state = state

    async def run(self, scopes: List[str]) -> FlowResult:
        """
        Run the authorization flow for the requested scopes.

        Returns:
            FlowResult with the account email and initial credential

        Raises:
            OAuthConfigError: If the client id or secret is missing
            FlowTimeoutError: If consent is not completed in time
            FlowDeniedError: If the provider reports an error such as access_denied
            AuthorizationFlowError: For any other flow failure
        """
        self.state = FlowState.IDLE
        scopes = dedupe_scopes(scopes)
        try:
            self.oauth_config.validate_complete()
            flow, code = await self._obtain_code(scopes)
            result = await self._exchange(flow, code, scopes)
        except asyncio.CancelledError:
            self._transition(FlowState.FAILED)
            raise
        except AuthError:
            self._transition(FlowState.FAILED)
            raise
        except Exception as e:
            self._transition(FlowState.FAILED)
            logger.error(f"OAuth flow failed: {e}", exc_info=True)
            raise AuthorizationFlowError(f"Authorization flow failed: {e}", e)

        self._transition(FlowState.SUCCESS)
        logger.info(f"Successfully completed OAuth flow for {result.email}")
        return result

    async def _obtain_code(self, scopes: List[str]):
        receiver = self.receiver_factory(self.oauth_config)
        try:
            base_url = await receiver.start()
            flow = self.flow_factory(scopes, base_url + self.oauth_config.redirect_path)
            auth_url, expected_state = flow.authorization_url(
                access_type="offline",
                prompt="consent",
                include_granted_scopes="true",
            )

            self._transition(FlowState.AWAITING_CONSENT)
            self.notify(f"Open this URL to authorize goog:\n{auth_url}")
            if self.browser_opener is not None:
                try:
                    self.browser_opener(auth_url)
                except webbrowser.Error as e:
                    logger.warning(f"Could not open browser: {e}")

            try:
                params = await asyncio.wait_for(receiver.wait_for_callback(), timeout=self.timeout)
            except asyncio.TimeoutError:
                raise FlowTimeoutError(self.timeout)
        finally:
            await receiver.stop()

        code = self._check_callback(params, expected_state)
        self._transition(FlowState.CODE_RECEIVED)
        return flow, code

    @staticmethod
    def _check_callback(params: Dict[str, str], expected_state: str) -> str:
        if params.get("error"):
            raise FlowDeniedError(params["error"], params.get("error_description") or None)
        if "state" in params and params["state"] != expected_state:
            raise AuthorizationFlowError("OAuth state mismatch: the callback did not come from this login")
        code = params.get("code")
        if not code:
            raise AuthorizationFlowError("No authorization code received")
        return code

    async def _exchange(self, flow: Flow, code: str, scopes: List[str]) -> FlowResult:
        self._transition(FlowState.EXCHANGING)

        try:
            await asyncio.to_thread(flow.fetch_token, code=code)
        except Exception as e:
            raise AuthorizationFlowError(f"Failed to exchange authorization code: {e}", e)

        google_credentials = flow.credentials
        granted = _granted_scopes(dict(flow.oauth2session.token or {}), scopes)
        credential = Credential.from_google_credentials(google_credentials, granted)

        missing = [s for s in scopes if s not in granted]
        if missing:
            logger.warning(f"User did not grant all requested scopes, missing: {', '.join(missing)}")

        email = await self.user_info_fetcher.fetch_email(google_credentials)
        return FlowResult(email=email, credential=credential, requested_scopes=scopes)
