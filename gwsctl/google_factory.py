"""
GoogleServiceFactory — per-account credentials shared across Google API clients.

Credentials come from the token store rather than a token file. An expired
access token is refreshed with the stored refresh token and written back, so
later invocations start from a fresh token. Service objects are built lazily
and cached per (api_name, version).

Usage:
    factory = GoogleServiceFactory("me@example.com", open_store())
    gmail   = factory.gmail
"""
from __future__ import annotations

import logging
from datetime import timezone
from typing import Any, Callable, Optional

import google.auth.exceptions
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build

from . import config
from .errors import AuthRequiredError, TokenNotFound
from .models import Token
from .token_store import TokenStore

logger = logging.getLogger(__name__)


# Scopes requested per service name accepted by `gwsctl auth add --services`.
SERVICE_SCOPES: dict[str, list[str]] = {
    "gmail": [
        "https://www.googleapis.com/auth/gmail.modify",
        "https://www.googleapis.com/auth/gmail.settings.basic",
    ],
    "calendar": ["https://www.googleapis.com/auth/calendar"],
    "drive": ["https://www.googleapis.com/auth/drive"],
    "docs": ["https://www.googleapis.com/auth/documents"],
    "sheets": ["https://www.googleapis.com/auth/spreadsheets"],
    "slides": ["https://www.googleapis.com/auth/presentations"],
    "classroom": [
        "https://www.googleapis.com/auth/classroom.courses",
        "https://www.googleapis.com/auth/classroom.rosters",
    ],
    "contacts": ["https://www.googleapis.com/auth/contacts.readonly"],
    "tasks": ["https://www.googleapis.com/auth/tasks"],
}

# Always requested so the callback can tell which account signed in.
IDENTITY_SCOPES: list[str] = ["openid", "https://www.googleapis.com/auth/userinfo.email"]

DEFAULT_SERVICES: list[str] = ["gmail", "calendar", "drive", "docs", "sheets", "slides"]


def scopes_for(services: list[str]) -> list[str]:
    """Identity scopes plus the scopes of every named service, deduplicated."""
    unknown = [s for s in services if s not in SERVICE_SCOPES]
    if unknown:
        raise ValueError(
            f"unknown service(s): {', '.join(unknown)} "
            f"(known: {', '.join(sorted(SERVICE_SCOPES))})"
        )
    scopes: list[str] = list(IDENTITY_SCOPES)
    for service in services:
        for scope in SERVICE_SCOPES[service]:
            if scope not in scopes:
                scopes.append(scope)
    return scopes


class GoogleServiceFactory:
    """
    Constructs and caches Google API service objects for one stored account.

    Raises AuthRequiredError when the account has no usable credential.
    """

    def __init__(
        self,
        email: str,
        store: TokenStore,
        client_credentials: Callable[[], tuple[str, str, str]] = config.client_credentials,
    ) -> None:
        self.email = email
        self._store = store
        self._client_credentials = client_credentials
        self._creds: Optional[Credentials] = None
        self._services: dict[str, Any] = {}

    # ── Credentials ───────────────────────────────────────────────────────────

    def _load(self, service: str) -> Credentials:
        try:
            token = self._store.get_token(self.email)
        except TokenNotFound as e:
            raise AuthRequiredError(service, self.email, e) from e
        if not token.refresh_token and (not token.access_token or token.expired):
            raise AuthRequiredError(service, self.email)

        client_id, client_secret, token_uri = self._client_credentials()
        expiry = token.expiry
        if expiry is not None:
            # google-auth compares against naive UTC datetimes
            expiry = expiry.astimezone(timezone.utc).replace(tzinfo=None)
        return Credentials(
            token=token.access_token or None,
            refresh_token=token.refresh_token or None,
            token_uri=token_uri,
            client_id=client_id,
            client_secret=client_secret,
            scopes=token.scopes or None,
            expiry=expiry,
        )

    def _refresh(self, creds: Credentials, service: str) -> None:
        try:
            creds.refresh(Request())
        except google.auth.exceptions.RefreshError as e:
            raise AuthRequiredError(service, self.email, e) from e

        existing = self._store.get_token(self.email)
        self._store.set_token(self.email, Token(
            email=self.email,
            services=existing.services,
            scopes=existing.scopes,
            access_token=creds.token or "",
            refresh_token=creds.refresh_token or "",
            expiry=creds.expiry.replace(tzinfo=timezone.utc) if creds.expiry else None,
            created_at=existing.created_at,
        ))
        logger.debug("Refreshed access token for %s", self.email)

    def credentials_for(self, service: str) -> Credentials:
        """Return valid (auto-refreshed) OAuth2 credentials."""
        if self._creds is None:
            self._creds = self._load(service)
        if not self._creds.valid:
            self._refresh(self._creds, service)
        return self._creds

    @property
    def credentials(self) -> Credentials:
        return self.credentials_for("google")

    # ── Internal builder ──────────────────────────────────────────────────────

    def _build(self, name: str, version: str) -> Any:
        """Build and cache a googleapiclient service object."""
        key = f"{name}/{version}"
        if key not in self._services:
            self._services[key] = build(
                name, version, credentials=self.credentials_for(name), cache_discovery=False
            )
        return self._services[key]

    # ── Service properties ────────────────────────────────────────────────────

    @property
    def gmail(self) -> Any:
        """Gmail API v1 service object."""
        return self._build("gmail", "v1")
