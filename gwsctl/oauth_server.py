"""
ManageServer — loopback OAuth2 redirect target and account admin API.

One server instance owns one OAuthSession: a CSRF token for the mutating
admin endpoints and an OAuth ``state`` value bound into the authorization
URL. Both die with the server. The server listens on 127.0.0.1 only, on an
ephemeral port, and stops after the first terminal event (account
authorized, consent cancelled, exchange failed) or when the timeout expires.

Routes:
    GET  /                 accounts page (embeds the CSRF token for its script)
    GET  /accounts         {"accounts": [...]}, default first
    GET  /auth/start       302 to Google's consent screen
    GET  /oauth2/callback  OAuth redirect target
    POST /set-default      {"email"}   requires X-CSRF-Token
    POST /remove-account   {"email"}   requires X-CSRF-Token

Usage:
    server = ManageServer(store, GoogleTokenExchanger(["gmail", "drive"]))
    result = server.run(path="/auth/start")
    print(result.outcome, result.email)
"""
from __future__ import annotations

import hmac
import html
import json
import logging
import os
import secrets
import threading
import webbrowser
from dataclasses import dataclass, field
from datetime import datetime, timezone
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Mapping, Optional
from urllib.parse import parse_qs, urlparse

import requests
from google.auth import jwt
from google_auth_oauthlib.flow import Flow
from oauthlib.oauth2.rfc6749.errors import OAuth2Error

from . import config
from .accounts import AccountRegistry
from .errors import AccountNotFound, GwsctlError, OAuthExchangeError, OAuthTimeout, StoreError
from .google_factory import scopes_for
from .models import Token, normalize_email
from .token_store import TokenStore

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/oauth2/callback"
CSRF_HEADER = "X-CSRF-Token"

OUTCOME_AUTHORIZED = "authorized"
OUTCOME_CANCELLED = "cancelled"
OUTCOME_FAILED = "failed"


# ── Session / results ─────────────────────────────────────────────────────────

@dataclass
class OAuthSession:
    """Per-server secrets; never shared between server instances."""

    csrf_token: str
    oauth_state: str
    redirect_uri: str = ""
    state_consumed: bool = False

    @classmethod
    def new(cls, redirect_uri: str = "") -> "OAuthSession":
        return cls(
            csrf_token=secrets.token_urlsafe(32),
            oauth_state=secrets.token_urlsafe(32),
            redirect_uri=redirect_uri,
        )


@dataclass
class Response:
    status: int
    body: bytes = b""
    content_type: str = "application/json"
    headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def json(cls, status: int, payload: Any) -> "Response":
        return cls(status, json.dumps(payload).encode("utf-8"))

    @classmethod
    def html(cls, status: int, text: str) -> "Response":
        return cls(status, text.encode("utf-8"), "text/html; charset=utf-8")


@dataclass
class OAuthResult:
    outcome: str
    email: str = ""
    error: Optional[BaseException] = None


# ── Token exchange ────────────────────────────────────────────────────────────

class GoogleTokenExchanger:
    """
    Authorization-code flow against Google via google_auth_oauthlib.

    The same Flow object builds the consent URL and redeems the code, so the
    PKCE verifier generated for the URL is the one sent with the exchange.
    """

    def __init__(
        self,
        services: list[str],
        client_config: Optional[Callable[[], dict[str, Any]]] = None,
    ) -> None:
        self.services = list(services)
        self.scopes = scopes_for(self.services)
        self._client_config = client_config or config.load_client_config
        self._flow: Optional[Flow] = None
        # Google may grant a superset/subset (include_granted_scopes)
        os.environ.setdefault("OAUTHLIB_RELAX_TOKEN_SCOPE", "1")

    def _new_flow(self, redirect_uri: str, **kwargs: Any) -> Flow:
        return Flow.from_client_config(
            self._client_config(), scopes=self.scopes, redirect_uri=redirect_uri, **kwargs
        )

    def authorization_url(self, redirect_uri: str, state: str) -> str:
        self._flow = self._new_flow(redirect_uri)
        url, _ = self._flow.authorization_url(
            access_type="offline",          # get a refresh token
            include_granted_scopes="true",
            prompt="consent",               # force consent so the refresh token is re-issued
            state=state,
        )
        return url

    def exchange(self, code: str, redirect_uri: str) -> Token:
        flow = self._flow
        if flow is None or flow.redirect_uri != redirect_uri:
            flow = self._new_flow(redirect_uri, autogenerate_code_verifier=False)
        try:
            flow.fetch_token(code=code)
        except (OAuth2Error, requests.RequestException, ValueError) as e:
            raise OAuthExchangeError(f"token exchange failed: {e}") from e

        creds = flow.credentials
        id_token = getattr(creds, "id_token", None)
        if not id_token:
            raise OAuthExchangeError("token exchange failed: no id_token in response (missing openid scope?)")
        try:
            claims = jwt.decode(id_token, verify=False)
        except ValueError as e:
            raise OAuthExchangeError(f"token exchange failed: unreadable id_token: {e}") from e
        email = normalize_email(claims.get("email", ""))
        if not email:
            raise OAuthExchangeError("token exchange failed: id_token has no email claim")

        return Token(
            email=email,
            services=list(self.services),
            scopes=list(creds.scopes or self.scopes),
            access_token=creds.token or "",
            refresh_token=creds.refresh_token or "",
            expiry=creds.expiry.replace(tzinfo=timezone.utc) if creds.expiry else None,
            created_at=datetime.now(timezone.utc),
        )


# ── Pages ─────────────────────────────────────────────────────────────────────

_ACCOUNTS_PAGE = """<!doctype html>
<html>
<head>
<meta charset="utf-8">
<title>gwsctl accounts</title>
<style>
  body { font-family: system-ui, sans-serif; max-width: 40rem; margin: 3rem auto; }
  li { margin: .5rem 0; }
  .default { font-weight: bold; }
  button { margin-left: .5rem; }
</style>
</head>
<body>
<h1>Google accounts</h1>
<ul id="accounts"><li>Loading…</li></ul>
<p><a href="/auth/start">Add account</a></p>
<script>
const csrfToken = __CSRF_TOKEN__;

async function post(path, email) {
  const resp = await fetch(path, {
    method: "POST",
    headers: {"Content-Type": "application/json", "X-CSRF-Token": csrfToken},
    body: JSON.stringify({email: email}),
  });
  if (!resp.ok) { alert(path + " failed: " + resp.status); }
  await load();
}

async function load() {
  const resp = await fetch("/accounts");
  const data = await resp.json();
  const list = document.getElementById("accounts");
  list.innerHTML = "";
  if (data.accounts.length === 0) {
    list.innerHTML = "<li>No accounts yet.</li>";
  }
  for (const acct of data.accounts) {
    const li = document.createElement("li");
    li.textContent = acct.email + " (" + acct.services.join(", ") + ")";
    if (acct.isDefault) {
      li.className = "default";
      li.textContent += " — default";
    } else {
      const btn = document.createElement("button");
      btn.textContent = "Make default";
      btn.onclick = () => post("/set-default", acct.email);
      li.appendChild(btn);
    }
    const rm = document.createElement("button");
    rm.textContent = "Remove";
    rm.onclick = () => { if (confirm("Remove " + acct.email + "?")) post("/remove-account", acct.email); };
    li.appendChild(rm);
    list.appendChild(li);
  }
}

load();
</script>
</body>
</html>
"""

_MESSAGE_PAGE = """<!doctype html>
<html><head><meta charset="utf-8"><title>{title}</title></head>
<body style="font-family: system-ui, sans-serif; max-width: 40rem; margin: 3rem auto;">
<h1>{title}</h1>
<p>{message}</p>
<p>You can close this tab.</p>
</body></html>
"""


def _message_page(status: int, title: str, message: str) -> Response:
    return Response.html(status, _MESSAGE_PAGE.format(title=html.escape(title), message=html.escape(message)))


# ── Server ────────────────────────────────────────────────────────────────────

class _Handler(BaseHTTPRequestHandler):
    server: "_LoopbackHTTPServer"

    def _serve(self, method: str) -> None:
        parsed = urlparse(self.path)
        query = {k: v[0] for k, v in parse_qs(parsed.query, keep_blank_values=True).items()}
        body = b""
        if method == "POST":
            length = int(self.headers.get("Content-Length") or 0)
            body = self.rfile.read(min(length, 64 * 1024))
        resp = self.server.manager.dispatch(method, parsed.path, query, self.headers, body)

        self.send_response(resp.status)
        self.send_header("Content-Type", resp.content_type)
        self.send_header("Content-Length", str(len(resp.body)))
        self.send_header("Cache-Control", "no-store")
        for name, value in resp.headers.items():
            self.send_header(name, value)
        self.end_headers()
        self.wfile.write(resp.body)

    def do_GET(self) -> None:  # noqa: N802
        self._serve("GET")

    def do_POST(self) -> None:  # noqa: N802
        self._serve("POST")

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        logger.debug("%s - %s", self.address_string(), format % args)


class _LoopbackHTTPServer(ThreadingHTTPServer):
    manager: "ManageServer"


class ManageServer:
    """Single-session loopback server; see module docstring."""

    def __init__(
        self,
        store: TokenStore,
        exchanger: Any,
        timeout: float = 300.0,
        session: Optional[OAuthSession] = None,
    ) -> None:
        self.store = store
        self.registry = AccountRegistry(store)
        self.exchanger = exchanger
        self.timeout = timeout
        self.session = session or OAuthSession.new()
        self._httpd: Optional[_LoopbackHTTPServer] = None
        self._done = threading.Event()
        self._result: Optional[OAuthResult] = None
        self._result_lock = threading.Lock()

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def start(self) -> str:
        """Bind 127.0.0.1 on an ephemeral port; return the base URL."""
        httpd = _LoopbackHTTPServer(("127.0.0.1", 0), _Handler)
        httpd.manager = self
        self._httpd = httpd
        self.session.redirect_uri = f"{self.url}{CALLBACK_PATH}"
        logger.debug("OAuth loopback server listening on %s", self.url)
        return self.url

    @property
    def url(self) -> str:
        if self._httpd is None:
            raise RuntimeError("server not started")
        host, port = self._httpd.server_address[:2]
        return f"http://{host}:{port}"

    @property
    def redirect_uri(self) -> str:
        return self.session.redirect_uri

    def shutdown(self) -> None:
        """Stop serving and release the port. Safe to call more than once."""
        httpd, self._httpd = self._httpd, None
        if httpd is None:
            return
        httpd.shutdown()
        httpd.server_close()
        logger.debug("OAuth loopback server closed")

    def run(
        self,
        path: str = "/",
        open_browser: bool = True,
        on_ready: Optional[Callable[[str], None]] = None,
    ) -> OAuthResult:
        """
        Serve until a terminal event or the timeout.

        Raises OAuthTimeout when nothing happened in time. KeyboardInterrupt
        propagates after the listener has been closed.
        """
        if self._httpd is None:
            self.start()
        assert self._httpd is not None
        thread = threading.Thread(target=self._httpd.serve_forever, name="gwsctl-oauth", daemon=True)
        thread.start()
        url = f"{self.url}{path}"
        try:
            if on_ready is not None:
                on_ready(url)
            if open_browser:
                webbrowser.open(url)
            if not self._done.wait(self.timeout):
                raise OAuthTimeout(f"timed out after {self.timeout:g}s waiting for authorization")
        finally:
            self.shutdown()
            thread.join(timeout=5)
        assert self._result is not None
        return self._result

    def _finish(self, result: OAuthResult) -> None:
        with self._result_lock:
            if self._result is None:
                self._result = result
        self._done.set()

    @property
    def result(self) -> Optional[OAuthResult]:
        return self._result

    # ── Routing ───────────────────────────────────────────────────────────────

    def dispatch(
        self,
        method: str,
        path: str,
        query: Mapping[str, str],
        headers: Mapping[str, str],
        body: bytes,
    ) -> Response:
        routes: dict[str, tuple[str, Callable[[], Response]]] = {
            "/": ("GET", self.handle_accounts_page),
            "/accounts": ("GET", self.handle_list_accounts),
            "/auth/start": ("GET", self.handle_auth_start),
            CALLBACK_PATH: ("GET", lambda: self.handle_oauth_callback(query)),
            "/set-default": ("POST", lambda: self.handle_set_default(headers, body)),
            "/remove-account": ("POST", lambda: self.handle_remove_account(headers, body)),
        }
        route = routes.get(path)
        if route is None:
            return Response.json(HTTPStatus.NOT_FOUND, {"error": "not found"})
        allowed, handler = route
        if method != allowed:
            return Response(HTTPStatus.METHOD_NOT_ALLOWED, b"", headers={"Allow": allowed})
        try:
            return handler()
        except Exception:
            logger.exception("Unhandled error serving %s %s", method, path)
            return Response.json(HTTPStatus.INTERNAL_SERVER_ERROR, {"error": "internal error"})

    # ── Handlers ──────────────────────────────────────────────────────────────

    def handle_accounts_page(self) -> Response:
        page = _ACCOUNTS_PAGE.replace("__CSRF_TOKEN__", json.dumps(self.session.csrf_token))
        return Response.html(HTTPStatus.OK, page)

    def handle_list_accounts(self) -> Response:
        try:
            accounts = self.registry.list()
        except StoreError as e:
            logger.error("Cannot read token store: %s", e)
            return Response.json(HTTPStatus.INTERNAL_SERVER_ERROR, {"error": str(e)})
        return Response.json(HTTPStatus.OK, {"accounts": [a.to_dict() for a in accounts]})

    def handle_auth_start(self) -> Response:
        url = self.exchanger.authorization_url(self.redirect_uri, self.session.oauth_state)
        return Response(HTTPStatus.FOUND, b"", "text/plain", headers={"Location": url})

    def handle_oauth_callback(self, query: Mapping[str, str]) -> Response:
        error = query.get("error", "")
        if error:
            logger.info("Authorization cancelled by user (%s)", error)
            self._finish(OAuthResult(OUTCOME_CANCELLED))
            return _message_page(
                HTTPStatus.OK,
                "Authorization cancelled",
                f"No account was added ({error}).",
            )

        state = query.get("state", "")
        if self.session.state_consumed or not hmac.compare_digest(
            state.encode("utf-8"), self.session.oauth_state.encode("utf-8")
        ):
            logger.warning("OAuth callback with mismatched state rejected")
            return _message_page(HTTPStatus.BAD_REQUEST, "Invalid request", "State mismatch. Please start again.")

        code = query.get("code", "")
        if not code:
            return _message_page(HTTPStatus.BAD_REQUEST, "Invalid request", "Missing authorization code.")

        try:
            token = self.exchanger.exchange(code, self.redirect_uri)
            self.store.set_token(token.email, token)
        except (OAuthExchangeError, StoreError) as e:
            logger.error("Authorization failed: %s", e)
            self._finish(OAuthResult(OUTCOME_FAILED, error=e))
            status = HTTPStatus.BAD_GATEWAY if isinstance(e, OAuthExchangeError) else HTTPStatus.INTERNAL_SERVER_ERROR
            return _message_page(status, "Authorization failed", str(e))

        self.session.state_consumed = True
        logger.info("Authorized %s (%s)", token.email, ", ".join(token.services))
        self._finish(OAuthResult(OUTCOME_AUTHORIZED, email=token.email))
        return _message_page(HTTPStatus.OK, "Account authorized", f"{token.email} is ready to use with gwsctl.")

    def _csrf_ok(self, headers: Mapping[str, str]) -> bool:
        supplied = headers.get(CSRF_HEADER) or ""
        return hmac.compare_digest(supplied.encode("utf-8"), self.session.csrf_token.encode("utf-8"))

    def _mutate(self, headers: Mapping[str, str], body: bytes, action: Callable[[str], Any]) -> Response:
        if not self._csrf_ok(headers):
            logger.warning("Rejected admin request with missing or invalid CSRF token")
            return Response.json(HTTPStatus.FORBIDDEN, {"error": "invalid CSRF token"})
        try:
            payload = json.loads(body or b"{}")
        except ValueError:
            return Response.json(HTTPStatus.BAD_REQUEST, {"error": "body must be JSON"})
        raw = payload.get("email") if isinstance(payload, dict) else None
        email = normalize_email(raw) if isinstance(raw, str) else ""
        if not email:
            return Response.json(HTTPStatus.BAD_REQUEST, {"error": "email is required"})
        try:
            accounts = action(email)
        except AccountNotFound as e:
            return Response.json(HTTPStatus.NOT_FOUND, {"error": str(e)})
        except GwsctlError as e:
            logger.error("Account update failed: %s", e)
            return Response.json(HTTPStatus.INTERNAL_SERVER_ERROR, {"error": str(e)})
        return Response.json(HTTPStatus.OK, {"ok": True, "accounts": [a.to_dict() for a in accounts]})

    def handle_set_default(self, headers: Mapping[str, str], body: bytes) -> Response:
        return self._mutate(headers, body, self.registry.set_default)

    def handle_remove_account(self, headers: Mapping[str, str], body: bytes) -> Response:
        return self._mutate(headers, body, self.registry.remove)
