"""
Session lifecycle: PKCE browser login, silent refresh, and the in-memory credential.
"""

import logging
import secrets
import threading
import webbrowser
from collections.abc import Callable
from datetime import UTC
from datetime import datetime
from datetime import timedelta
from enum import Enum
from time import monotonic
from typing import Any
from urllib.parse import parse_qsl
from urllib.parse import urlsplit
from wsgiref.simple_server import WSGIRequestHandler
from wsgiref.simple_server import WSGIServer
from wsgiref.simple_server import make_server
from wsgiref.util import request_uri

import httpx
from authlib.common.errors import AuthlibBaseError
from authlib.common.security import generate_token
from authlib.integrations.httpx_client import OAuth2Client

from termcal.credential_store import CredentialStore
from termcal.models import AuthError
from termcal.models import Credential
from termcal.models import TokenRejectedError
from termcal.models import TransientFetchError

AUTHORIZE_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/authorize"
TOKEN_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
SCOPES = ("offline_access", "User.Read", "Calendars.Read")

# Treat tokens this close to expiry as already expired.
DEFAULT_EXPIRY_MARGIN = timedelta(seconds=60)
DEFAULT_EXPIRES_IN = 3600

# OAuth error codes meaning the refresh token itself is no longer usable.
_REJECTED_GRANT_ERRORS = frozenset({"invalid_grant", "interaction_required", "invalid_client"})

_LOGIN_OK_PAGE = b"Login successful! You can now close this tab."
_LOGIN_FAILED_PAGE = b"Login failed. Return to the terminal for details."

logger = logging.getLogger(__name__)


class SessionState(Enum):
    LOGGED_OUT = "logged_out"
    AUTHENTICATED = "authenticated"


# ---------------------------------------------------------------------------
# Loopback redirect listener
# ---------------------------------------------------------------------------


class _RedirectApp:
    """WSGI app remembering the first request that hits the redirect path."""

    def __init__(self, callback_path: str = "/"):
        self.callback_path = callback_path
        self.last_request_uri: str | None = None

    def __call__(self, environ, start_response):
        if environ.get("PATH_INFO") != self.callback_path or self.last_request_uri is not None:
            # favicon requests and anything else the browser tries
            start_response("404 Not Found", [("Content-Type", "text/plain; charset=utf-8")])
            return [b"Not found"]

        self.last_request_uri = request_uri(environ)
        query = dict(parse_qsl(environ.get("QUERY_STRING", "")))
        start_response("200 OK", [("Content-Type", "text/plain; charset=utf-8")])
        return [_LOGIN_OK_PAGE if query.get("code") else _LOGIN_FAILED_PAGE]


class _QuietHandler(WSGIRequestHandler):
    def log_message(self, format, *args):
        logger.debug("callback listener: " + format, *args)


# ---------------------------------------------------------------------------
# Session manager
# ---------------------------------------------------------------------------


class SessionManager:
    """Owns the in-memory Credential and produces a usable one on demand.

    State machine: LOGGED_OUT --login--> AUTHENTICATED --refresh rejected--> LOGGED_OUT.

    The authorization-code round trip (PKCE challenge, authorize URL, code
    exchange) goes through authlib's httpx OAuth2Client; refreshes are plain
    form posts on the same client.
    """

    def __init__(
        self,
        client_id: str,
        credential_store: CredentialStore,
        transport: httpx.BaseTransport | None = None,
        redirect_port: int = 8080,
        login_timeout: float = 300,
        interactive: bool = True,
        open_browser: Callable[[str], bool] = webbrowser.open,
        expiry_margin: timedelta = DEFAULT_EXPIRY_MARGIN,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.client_id = client_id
        self.store = credential_store
        self.oauth = OAuth2Client(
            client_id,
            scope=" ".join(SCOPES),
            token_endpoint_auth_method="none",
            code_challenge_method="S256",
            transport=transport,
            timeout=30.0,
        )
        self.redirect_port = redirect_port
        self.login_timeout = login_timeout
        self.interactive = interactive
        self.open_browser = open_browser
        self.expiry_margin = expiry_margin
        self.clock = clock

        self._credential: Credential | None = None
        self._lock = threading.RLock()
        self._force_refresh = threading.Event()

    @property
    def state(self) -> SessionState:
        if self._credential is None:
            return SessionState.LOGGED_OUT
        return SessionState.AUTHENTICATED

    def ensure_valid_credential(self) -> Credential:
        """Return a credential usable for at least one request.

        Order of preference: cached access token, silent refresh, interactive login.
        """
        with self._lock:
            credential = self._credential
            forced = self._force_refresh.is_set()
            if (
                credential is not None
                and not forced
                and not credential.expires_within(self.expiry_margin, self.clock())
            ):
                return credential

            refresh_token = credential.refresh_token if credential else self.store.load()
            if refresh_token:
                if forced:
                    logger.info("Server rejected cached access token, forcing refresh")
                else:
                    logger.info("Refreshing access token...")
                try:
                    return self._refresh(refresh_token)
                except TokenRejectedError as e:
                    logger.warning(f"Could not refresh token ({e}). Starting full login...")
                    self._credential = None
                    self.store.clear()

            if not self.interactive:
                raise AuthError("Not logged in. Run 'termcal login' first.")
            return self._login_locked()

    def interactive_login(self) -> Credential:
        """Run the browser round-trip; blocks until the callback arrives or times out."""
        with self._lock:
            return self._login_locked()

    def report_unauthorized(self):
        """Distrust the cached access token; the next ensure_valid_credential() refreshes."""
        logger.debug("Access token reported unauthorized")
        self._force_refresh.set()

    def logout(self):
        with self._lock:
            self._credential = None
            self._force_refresh.clear()
            self.store.clear()
        logger.info("Logged out")

    def close(self):
        self.oauth.close()

    # ------------------------------------------------------------------ #
    # Flows                                                                #
    # ------------------------------------------------------------------ #

    def _login_locked(self) -> Credential:
        code_verifier = generate_token(64)
        app = _RedirectApp("/")
        try:
            server = make_server("127.0.0.1", self.redirect_port, app, handler_class=_QuietHandler)
        except OSError as e:
            raise AuthError(
                f"Could not listen for the login callback on port {self.redirect_port}: {e}"
            ) from e

        try:
            redirect_uri = f"http://localhost:{server.server_port}"
            authorize_url, expected_state = self.oauth.create_authorization_url(
                AUTHORIZE_URL,
                state=generate_token(48),
                code_verifier=code_verifier,
                redirect_uri=redirect_uri,
                response_mode="query",
            )
            logger.info(f"Open this URL in your browser to log in: {authorize_url}")
            if not self.open_browser(authorize_url):
                logger.warning("Could not open a browser; open the URL above manually")

            params = dict(parse_qsl(urlsplit(self._wait_for_callback(server, app)).query))
        finally:
            server.server_close()

        if "error" in params:
            detail = params.get("error_description") or params["error"]
            raise AuthError(f"Authorization was denied: {detail}")

        received_state = params.get("state")
        if received_state is None or not secrets.compare_digest(received_state, expected_state):
            raise AuthError("Login callback state does not match (possible CSRF); aborting")

        code = params.get("code")
        if not code:
            raise AuthError("Login callback did not include an authorization code")

        try:
            token = self.oauth.fetch_token(
                TOKEN_URL,
                grant_type="authorization_code",
                code=code,
                code_verifier=code_verifier,
                redirect_uri=redirect_uri,
            )
        except httpx.HTTPError as e:
            raise TransientFetchError(f"Token endpoint request failed: {e}") from e
        except AuthlibBaseError as e:
            raise AuthError(f"Token request rejected: {e}") from e
        except ValueError as e:
            raise AuthError("Token endpoint returned invalid JSON") from e

        credential = self._install(dict(token), previous_refresh_token=None)
        logger.info("Login successful")
        return credential

    def _wait_for_callback(self, server: WSGIServer, app: _RedirectApp) -> str:
        deadline = monotonic() + self.login_timeout
        while app.last_request_uri is None:
            remaining = deadline - monotonic()
            if remaining <= 0:
                raise AuthError(f"Timed out after {self.login_timeout:.0f}s waiting for login")
            server.timeout = remaining
            server.handle_request()
        return app.last_request_uri

    def _refresh(self, refresh_token: str) -> Credential:
        payload = self._token_request(
            {
                "grant_type": "refresh_token",
                "client_id": self.client_id,
                "refresh_token": refresh_token,
                "scope": " ".join(SCOPES),
            },
        )
        credential = self._install(payload, previous_refresh_token=refresh_token)
        logger.info("Token refreshed successfully")
        return credential

    def _install(self, payload: dict[str, Any], previous_refresh_token: str | None) -> Credential:
        """Swap in a new credential, then persist its (possibly rotated) refresh token."""
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise AuthError("Token response is missing an access_token")

        refresh_token = payload.get("refresh_token") or previous_refresh_token
        if not isinstance(refresh_token, str) or not refresh_token:
            raise AuthError("Token response has no refresh_token; is 'offline_access' granted?")

        expires_in = _coerce_expires_in(payload.get("expires_in"))
        credential = Credential(
            access_token=access_token.strip(),
            access_token_expiry=self.clock() + timedelta(seconds=expires_in),
            refresh_token=refresh_token,
        )
        self._credential = credential
        self._force_refresh.clear()
        self.store.save(refresh_token)
        return credential

    def _token_request(self, data: dict[str, str]) -> dict[str, Any]:
        try:
            response = self.oauth.request(
                "POST",
                TOKEN_URL,
                data=data,
                headers={"Accept": "application/json"},
                withhold_token=True,
            )
        except httpx.HTTPError as e:
            raise TransientFetchError(f"Token endpoint request failed: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if response.status_code >= 500 or response.status_code == 429:
            raise TransientFetchError(
                f"Token endpoint unavailable ({response.status_code})",
                status_code=response.status_code,
            )

        if response.status_code >= 400:
            error = payload.get("error", "") if isinstance(payload, dict) else ""
            description = payload.get("error_description", "") if isinstance(payload, dict) else ""
            message = f"Token request rejected ({response.status_code}): {error or 'unknown error'}"
            if description:
                message += f" - {description.splitlines()[0]}"
            if error in _REJECTED_GRANT_ERRORS or response.status_code == 401:
                raise TokenRejectedError(message)
            raise AuthError(message)

        if not isinstance(payload, dict):
            raise AuthError("Token endpoint returned invalid JSON")
        return payload


def _coerce_expires_in(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN
    if isinstance(value, str) and value.isdigit():
        value = int(value)
    if isinstance(value, int | float) and value > 0:
        return int(value)
    return DEFAULT_EXPIRES_IN
