"""
Test configuration and fixtures for pytest.

This module provides shared fixtures used across all tests:
- Isolated config directory (GWSCTL_CONFIG_DIR under tmp_path)
- SpyStore: in-memory TokenStore that records mutating calls
- FakeGmail: stand-in for the googleapiclient Gmail service
- In-memory keyring for the keyring backend
"""

import json
from typing import Any, Callable, Optional

import httplib2
import keyring
import keyring.errors
import pytest
from googleapiclient.errors import HttpError

from gwsctl import config
from gwsctl.errors import TokenNotFound
from gwsctl.models import Token, normalize_email
from gwsctl.token_store import TokenStore


# ---------------------------------------------------------------------------
# ENVIRONMENT
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def config_home(tmp_path, monkeypatch):
    """Point every test at its own config dir and clear gwsctl env vars."""
    home = tmp_path / "gwsctl-config"
    monkeypatch.setenv(config.CONFIG_DIR_ENV, str(home))
    for name in (
        config.KEYRING_PASSWORD_ENV,
        config.KEYRING_BACKEND_ENV,
        config.ACCOUNT_ENV,
        config.CLIENT_SECRET_FILE_ENV,
    ):
        monkeypatch.delenv(name, raising=False)
    return home


# ---------------------------------------------------------------------------
# TOKEN STORE
# ---------------------------------------------------------------------------

class SpyStore(TokenStore):
    """In-memory TokenStore that records every mutating call."""

    def __init__(self, tokens: Optional[list[Token]] = None, default: str = "") -> None:
        super().__init__()
        self.tokens: dict[str, Token] = {t.email: t for t in (tokens or [])}
        self.default = default
        self.set_token_calls: list[str] = []
        self.delete_calls: list[str] = []
        self.set_default_calls: list[str] = []

    def keys(self) -> list[str]:
        return list(self.tokens)

    def get_token(self, email: str) -> Token:
        email = normalize_email(email)
        if email not in self.tokens:
            raise TokenNotFound(email)
        return self.tokens[email]

    def set_token(self, email: str, token: Token) -> None:
        email = normalize_email(email)
        self.set_token_calls.append(email)
        self.tokens[email] = token.merged_over(self.tokens.get(email))

    def delete_token(self, email: str) -> None:
        email = normalize_email(email)
        self.delete_calls.append(email)
        self.tokens.pop(email, None)
        if self.default == email:
            self.default = ""

    def get_default_account(self) -> str:
        return self.default

    def set_default_account(self, email: str) -> None:
        self.set_default_calls.append(email)
        self.default = normalize_email(email)

    @property
    def mutated(self) -> bool:
        return bool(self.set_token_calls or self.delete_calls or self.set_default_calls)


def make_token(email: str, services: Optional[list[str]] = None, **kwargs: Any) -> Token:
    return Token(
        email=email,
        services=services or ["gmail"],
        access_token=kwargs.pop("access_token", "access-" + email),
        refresh_token=kwargs.pop("refresh_token", "refresh-" + email),
        **kwargs,
    )


@pytest.fixture
def spy_store() -> SpyStore:
    return SpyStore([make_token("a@b.com", ["gmail"]), make_token("c@d.com", ["drive"])])


@pytest.fixture
def memory_keyring(monkeypatch) -> dict:
    """Replace the keyring module functions with a dict-backed implementation."""
    entries: dict[tuple[str, str], str] = {}

    def get_password(service: str, username: str) -> Optional[str]:
        return entries.get((service, username))

    def set_password(service: str, username: str, password: str) -> None:
        entries[(service, username)] = password

    def delete_password(service: str, username: str) -> None:
        if (service, username) not in entries:
            raise keyring.errors.PasswordDeleteError("not found")
        del entries[(service, username)]

    monkeypatch.setattr(keyring, "get_password", get_password)
    monkeypatch.setattr(keyring, "set_password", set_password)
    monkeypatch.setattr(keyring, "delete_password", delete_password)
    return entries


# ---------------------------------------------------------------------------
# GMAIL
# ---------------------------------------------------------------------------

def http_error(status: int, reason: str = "", headers: Optional[dict] = None) -> HttpError:
    """Build a googleapiclient HttpError with a Google-style JSON body."""
    info = {"status": str(status)}
    info.update(headers or {})
    body = {"error": {"code": status, "message": reason or "error", "errors": [{"reason": reason}] if reason else []}}
    return HttpError(httplib2.Response(info), json.dumps(body).encode("utf-8"))


class FakeRequest:
    def __init__(self, fn: Callable[[], Any]) -> None:
        self._fn = fn

    def execute(self) -> Any:
        return self._fn()


class FakeGmail:
    """
    Mimics the request chains GmailWatcher uses:
    users().labels().list(), users().watch(), users().stop(), users().history().list().
    """

    def __init__(self) -> None:
        self.label_list = [{"id": "INBOX", "name": "INBOX"}, {"id": "Label_1", "name": "Custom"}]
        self.watch_response = {"historyId": "123", "expiration": "1730000000000"}
        self.watch_error: Optional[Exception] = None
        self.stop_error: Optional[Exception] = None
        self.history_pages: list[dict] = []
        self.history_error: Optional[Exception] = None
        self.watch_calls: list[dict] = []
        self.stop_calls = 0
        self.history_calls: list[dict] = []

    # users() returns an object exposing labels/watch/stop/history
    def users(self) -> "FakeGmail":
        return self

    def labels(self) -> "FakeGmail._Labels":
        return FakeGmail._Labels(self)

    def history(self) -> "FakeGmail._History":
        return FakeGmail._History(self)

    def watch(self, userId: str, body: dict) -> FakeRequest:
        def run():
            self.watch_calls.append(body)
            if self.watch_error is not None:
                raise self.watch_error
            return dict(self.watch_response)
        return FakeRequest(run)

    def stop(self, userId: str) -> FakeRequest:
        def run():
            self.stop_calls += 1
            if self.stop_error is not None:
                raise self.stop_error
            return ""
        return FakeRequest(run)

    class _Labels:
        def __init__(self, gmail: "FakeGmail") -> None:
            self._gmail = gmail

        def list(self, userId: str) -> FakeRequest:
            return FakeRequest(lambda: {"labels": list(self._gmail.label_list)})

    class _History:
        def __init__(self, gmail: "FakeGmail") -> None:
            self._gmail = gmail

        def list(self, **kwargs: Any) -> FakeRequest:
            def run():
                self._gmail.history_calls.append(kwargs)
                if self._gmail.history_error is not None:
                    raise self._gmail.history_error
                return self._gmail.history_pages.pop(0) if self._gmail.history_pages else {}
            return FakeRequest(run)


@pytest.fixture
def gmail() -> FakeGmail:
    return FakeGmail()
