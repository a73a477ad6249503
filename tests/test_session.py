"""
SessionManager tests: cached tokens, silent refresh with rotation, rejection
handling, and a full PKCE login against a real loopback listener.

The token endpoint is an httpx.MockTransport; the browser is a stub that
calls the loopback listener the way a real redirect would.
"""

import threading
from datetime import timedelta
from urllib.parse import parse_qs
from urllib.parse import urlsplit

import httpx
import pytest
from authlib.oauth2.rfc7636 import create_s256_code_challenge

from termcal.auth import TOKEN_URL
from termcal.auth import SessionManager
from termcal.auth import SessionState
from termcal.credential_store import CredentialStore
from termcal.models import AuthError
from termcal.models import TransientFetchError
from tests.conftest import NOW
from tests.fake_client import MemoryKeyring


class TokenEndpoint:
    """Scripted token endpoint; records every form it receives."""

    def __init__(self):
        self.forms: list[dict[str, str]] = []
        self.responses: list[httpx.Response] = []
        self.issued = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        assert str(request.url) == TOKEN_URL
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        self.forms.append(form)
        if self.responses:
            return self.responses.pop(0)
        self.issued += 1
        return httpx.Response(
            200,
            json={
                "access_token": f"access-{self.issued}",
                "refresh_token": f"refresh-{self.issued}",
                "expires_in": 3600,
            },
        )


class Clock:
    def __init__(self):
        self.now = NOW

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def endpoint():
    return TokenEndpoint()


@pytest.fixture
def keyring_backend():
    return MemoryKeyring()


@pytest.fixture
def credential_store(keyring_backend):
    return CredentialStore(backend=keyring_backend)


@pytest.fixture
def clock():
    return Clock()


def _no_browser(url):
    raise AssertionError(f"browser must not be opened: {url}")


@pytest.fixture
def make_session(endpoint, credential_store, clock):
    sessions = []

    def factory(**kwargs):
        kwargs.setdefault("interactive", False)
        kwargs.setdefault("open_browser", _no_browser)
        session = SessionManager(
            client_id="client-123",
            credential_store=credential_store,
            transport=httpx.MockTransport(endpoint),
            clock=clock,
            **kwargs,
        )
        sessions.append(session)
        return session

    yield factory
    for session in sessions:
        session.close()


class TestSilentRefresh:
    def test_stored_refresh_token_is_used_then_cached(
        self, make_session, endpoint, keyring_backend
    ):
        CredentialStore(backend=keyring_backend).save("stored-refresh")
        session = make_session()

        first = session.ensure_valid_credential()
        second = session.ensure_valid_credential()

        assert first is second
        assert len(endpoint.forms) == 1
        assert endpoint.forms[0]["grant_type"] == "refresh_token"
        assert endpoint.forms[0]["refresh_token"] == "stored-refresh"
        assert session.state is SessionState.AUTHENTICATED

    def test_rotated_refresh_token_is_persisted(self, make_session, credential_store):
        credential_store.save("stored-refresh")
        session = make_session()

        session.ensure_valid_credential()

        assert credential_store.load() == "refresh-1"

    def test_refresh_without_rotation_keeps_old_token(
        self, make_session, endpoint, credential_store
    ):
        credential_store.save("stored-refresh")
        endpoint.responses.append(
            httpx.Response(200, json={"access_token": "access-x", "expires_in": 3600})
        )
        session = make_session()

        credential = session.ensure_valid_credential()

        assert credential.refresh_token == "stored-refresh"
        assert credential_store.load() == "stored-refresh"

    def test_token_near_expiry_is_refreshed(self, make_session, endpoint, credential_store, clock):
        credential_store.save("stored-refresh")
        session = make_session()
        session.ensure_valid_credential()

        clock.advance(seconds=3600 - 30)  # inside the 60s margin
        credential = session.ensure_valid_credential()

        assert credential.access_token == "access-2"
        assert endpoint.forms[1]["refresh_token"] == "refresh-1"

    def test_report_unauthorized_forces_refresh(self, make_session, endpoint, credential_store):
        credential_store.save("stored-refresh")
        session = make_session()
        session.ensure_valid_credential()

        session.report_unauthorized()
        credential = session.ensure_valid_credential()
        again = session.ensure_valid_credential()

        assert credential.access_token == "access-2"
        assert again is credential
        assert len(endpoint.forms) == 2

    def test_rejected_refresh_token_logs_out(self, make_session, endpoint, credential_store):
        credential_store.save("revoked")
        endpoint.responses.append(
            httpx.Response(
                400,
                json={"error": "invalid_grant", "error_description": "AADSTS70008: expired"},
            )
        )
        session = make_session()

        with pytest.raises(AuthError, match="Not logged in"):
            session.ensure_valid_credential()

        assert session.state is SessionState.LOGGED_OUT
        assert credential_store.load() is None

    def test_transient_refresh_failure_keeps_stored_token(
        self, make_session, endpoint, credential_store
    ):
        credential_store.save("stored-refresh")
        endpoint.responses.append(httpx.Response(503, text="unavailable"))
        session = make_session()

        with pytest.raises(TransientFetchError):
            session.ensure_valid_credential()

        assert credential_store.load() == "stored-refresh"
        # next attempt succeeds with the same token
        assert session.ensure_valid_credential().access_token == "access-1"

    def test_nothing_stored_and_not_interactive(self, make_session, endpoint):
        session = make_session()

        with pytest.raises(AuthError):
            session.ensure_valid_credential()
        assert endpoint.forms == []

    def test_logout_clears_memory_and_store(self, make_session, credential_store):
        credential_store.save("stored-refresh")
        session = make_session()
        session.ensure_valid_credential()

        session.logout()

        assert session.state is SessionState.LOGGED_OUT
        assert credential_store.load() is None


class _Browser:
    """Follows the authorize URL straight to the redirect, like a consenting user."""

    def __init__(self, code="auth-code", state_override=None, extra=""):
        self.code = code
        self.state_override = state_override
        self.extra = extra
        self.query: dict[str, str] = {}
        self.threads: list[threading.Thread] = []

    def __call__(self, url: str) -> bool:
        self.query = {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}
        state = self.state_override or self.query["state"]
        redirect = self.query["redirect_uri"].replace("localhost", "127.0.0.1")
        target = f"{redirect}/?code={self.code}&state={state}{self.extra}"
        thread = threading.Thread(target=self._visit, args=(target,), daemon=True)
        thread.start()
        self.threads.append(thread)
        return True

    @staticmethod
    def _visit(target: str):
        with httpx.Client(trust_env=False, timeout=5) as client:
            client.get(target)

    def join(self):
        for thread in self.threads:
            thread.join(timeout=5)


class TestInteractiveLogin:
    def test_full_pkce_round_trip(self, make_session, endpoint, credential_store):
        browser = _Browser()
        session = make_session(interactive=True, open_browser=browser, redirect_port=0)

        credential = session.ensure_valid_credential()
        browser.join()

        form = endpoint.forms[0]
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "auth-code"
        assert form["client_id"] == "client-123"
        assert form["redirect_uri"] == browser.query["redirect_uri"]
        assert 43 <= len(form["code_verifier"]) <= 128
        assert browser.query["code_challenge"] == create_s256_code_challenge(form["code_verifier"])
        assert credential.access_token == "access-1"
        assert credential_store.load() == "refresh-1"
        assert session.state is SessionState.AUTHENTICATED

    def test_authorize_url_requests_offline_access_with_pkce(self, make_session):
        browser = _Browser()
        session = make_session(interactive=True, open_browser=browser, redirect_port=0)

        session.interactive_login()
        browser.join()

        query = browser.query
        assert query["client_id"] == "client-123"
        assert query["response_type"] == "code"
        assert query["response_mode"] == "query"
        assert query["code_challenge_method"] == "S256"
        assert query["redirect_uri"].startswith("http://localhost:")
        assert {"offline_access", "Calendars.Read"} <= set(query["scope"].split())

    def test_each_login_uses_fresh_state_and_verifier(self, make_session, endpoint):
        first, second = _Browser(), _Browser()
        make_session(interactive=True, open_browser=first, redirect_port=0).interactive_login()
        make_session(interactive=True, open_browser=second, redirect_port=0).interactive_login()
        first.join()
        second.join()

        assert first.query["state"] != second.query["state"]
        assert endpoint.forms[0]["code_verifier"] != endpoint.forms[1]["code_verifier"]

    def test_state_mismatch_aborts_without_token_request(self, make_session, endpoint):
        browser = _Browser(state_override="forged")
        session = make_session(interactive=True, open_browser=browser, redirect_port=0)

        with pytest.raises(AuthError, match="state"):
            session.interactive_login()
        browser.join()

        assert endpoint.forms == []
        assert session.state is SessionState.LOGGED_OUT

    def test_denied_consent(self, make_session, endpoint):
        browser = _Browser(code="", extra="&error=access_denied")
        session = make_session(interactive=True, open_browser=browser, redirect_port=0)

        with pytest.raises(AuthError, match="denied"):
            session.interactive_login()
        browser.join()

        assert endpoint.forms == []

    def test_rejected_code_exchange(self, make_session, endpoint, credential_store):
        endpoint.responses.append(
            httpx.Response(400, json={"error": "invalid_grant", "error_description": "bad code"})
        )
        browser = _Browser()
        session = make_session(interactive=True, open_browser=browser, redirect_port=0)

        with pytest.raises(AuthError, match="invalid_grant"):
            session.interactive_login()
        browser.join()

        assert session.state is SessionState.LOGGED_OUT
        assert credential_store.load() is None

    def test_token_endpoint_outage_during_login_is_transient(self, make_session, endpoint):
        endpoint.responses.append(httpx.Response(503, text="unavailable"))
        browser = _Browser()
        session = make_session(interactive=True, open_browser=browser, redirect_port=0)

        with pytest.raises(TransientFetchError):
            session.interactive_login()
        browser.join()

    def test_login_times_out(self, make_session):
        session = make_session(
            interactive=True, open_browser=lambda url: True, redirect_port=0, login_timeout=0.3
        )

        with pytest.raises(AuthError, match="Timed out"):
            session.interactive_login()

    def test_rejected_refresh_falls_back_to_login(self, make_session, endpoint, credential_store):
        credential_store.save("revoked")
        endpoint.responses.append(httpx.Response(400, json={"error": "invalid_grant"}))
        browser = _Browser()
        session = make_session(interactive=True, open_browser=browser, redirect_port=0)

        credential = session.ensure_valid_credential()
        browser.join()

        assert [f["grant_type"] for f in endpoint.forms] == ["refresh_token", "authorization_code"]
        assert credential_store.load() == credential.refresh_token
