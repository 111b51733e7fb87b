"""
Gmail push-notification ("watch") lifecycle and webhook receiver.

States per account: NotWatching → Watching (start) → Watching (renew) →
NotWatching (stop). The only local record is a JSON state file per account
under <config>/state/gmail-watch/; no file means not watching. An expired
subscription keeps its file until renew or stop, and status() says so.

Gmail's watch has no "extend" call: renew simply registers the same topic and
labels again and stores the new historyId/expiration.

serve() runs an HTTP receiver for Pub/Sub push deliveries. Requests are
authenticated (shared token and/or Google-signed OIDC token) before the body
is even parsed, acknowledged with 204, and processed on a worker pool.
Notifications may arrive in any order; the stored historyId only moves
forward.
"""
from __future__ import annotations

import base64
import binascii
import hmac
import ipaddress
import json
import logging
import os
import sys
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any, Callable, Mapping, Optional
from urllib.parse import parse_qs, urlparse

import google.auth.exceptions
from google.auth.transport.requests import Request
from google.oauth2 import id_token

from . import config
from .errors import (
    GwsctlError,
    NotWatchingError,
    StoreCorrupt,
    WatchConfigError,
    WatchOperationError,
    is_not_found_error,
)
from .models import WatchState, expiration_from_millis, normalize_email
from .oauth_server import Response
from .retry import RequestExecutor

logger = logging.getLogger(__name__)

TOKEN_HEADER = "X-Webhook-Token"


# ── State files ───────────────────────────────────────────────────────────────

class WatchStateStore:
    """One JSON file per account; absence means NotWatching."""

    def __init__(self, base_dir: Optional[Path] = None) -> None:
        self.base_dir = Path(base_dir) if base_dir else config.state_dir() / "gmail-watch"

    def path(self, email: str) -> Path:
        return self.base_dir / f"{normalize_email(email)}.json"

    def load(self, email: str) -> Optional[WatchState]:
        path = self.path(email)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return WatchState.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            raise StoreCorrupt(
                f"watch state {path} is unreadable ({e}); run `gwsctl gmail watch stop` to clear it"
            ) from e

    def save(self, state: WatchState) -> None:
        path = self.path(state.email)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".watch-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(state.to_dict(), f, indent=2)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def delete(self, email: str) -> bool:
        """Remove the state file; return whether one existed."""
        try:
            self.path(email).unlink()
        except FileNotFoundError:
            return False
        return True


# ── Lifecycle ─────────────────────────────────────────────────────────────────

class GmailWatcher:
    """
    Usage:
        watcher = GmailWatcher(email, factory.gmail)
        watcher.start("projects/p/topics/t", ["INBOX"])
        watcher.renew()
        watcher.stop()
    """

    def __init__(
        self,
        email: str,
        gmail: Any = None,
        state_store: Optional[WatchStateStore] = None,
        executor: Optional[RequestExecutor] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        gmail_factory: Optional[Callable[[], Any]] = None,
    ) -> None:
        self.email = normalize_email(email)
        self._gmail = gmail
        self._gmail_factory = gmail_factory
        self.state_store = state_store or WatchStateStore()
        self._executor = executor or RequestExecutor()
        self._now = now

    @property
    def gmail(self) -> Any:
        """Gmail service, built on first use so local-only calls need no credentials."""
        if self._gmail is None:
            if self._gmail_factory is None:
                raise RuntimeError("GmailWatcher has no Gmail service")
            self._gmail = self._gmail_factory()
        return self._gmail

    def _execute(self, request: Any, operation: str) -> Any:
        try:
            return self._executor.execute(request, resource=f"gmail {operation}", email=self.email)
        except GwsctlError as e:
            raise WatchOperationError(operation, e) from e

    def _resolve_labels(self, labels: list[str]) -> list[str]:
        """Accept label ids or (case-insensitive) names; return ids."""
        if not labels:
            return []
        resp = self._execute(self.gmail.users().labels().list(userId="me"), "labels.list")
        by_id = {l["id"]: l["id"] for l in resp.get("labels", [])}
        by_name = {l.get("name", "").lower(): l["id"] for l in resp.get("labels", [])}
        ids: list[str] = []
        for label in labels:
            label_id = by_id.get(label) or by_name.get(label.lower())
            if label_id is None:
                raise WatchConfigError(f"unknown Gmail label: {label}")
            if label_id not in ids:
                ids.append(label_id)
        return ids

    def _register(self, topic: str, label_ids: list[str], label_filter_action: str) -> dict[str, Any]:
        body: dict[str, Any] = {"topicName": topic}
        if label_ids:
            body["labelIds"] = label_ids
            body["labelFilterAction"] = label_filter_action
        return self._execute(self.gmail.users().watch(userId="me", body=body), "watch")

    def _state_from(self, resp: dict[str, Any], topic: str, label_ids: list[str],
                    label_filter_action: str) -> WatchState:
        return WatchState(
            email=self.email,
            topic=topic,
            label_ids=label_ids,
            label_filter_action=label_filter_action,
            history_id=str(resp.get("historyId", "")),
            expiration=expiration_from_millis(resp.get("expiration")),
            updated_at=self._now(),
        )

    def start(self, topic: str, labels: Optional[list[str]] = None,
              label_filter_action: str = "include") -> dict[str, Any]:
        """
        Register a watch and persist its state.

        Starting while already watching re-registers and overwrites the state;
        the result carries ``restarted: true`` in that case.
        """
        if not topic:
            raise WatchConfigError("--topic is required (projects/<project>/topics/<topic>)")
        if label_filter_action not in ("include", "exclude"):
            raise WatchConfigError("--label-filter-action must be include or exclude")

        previous = self.state_store.load(self.email)
        label_ids = self._resolve_labels(list(labels or []))
        resp = self._register(topic, label_ids, label_filter_action)
        state = self._state_from(resp, topic, label_ids, label_filter_action)
        self.state_store.save(state)
        logger.info("Gmail watch started for %s on %s (history %s)", self.email, topic, state.history_id)
        return {**self._describe(state), "restarted": previous is not None}

    def status(self) -> dict[str, Any]:
        """Local state only; never calls Gmail."""
        state = self.state_store.load(self.email)
        if state is None:
            return {"watching": False, "email": self.email}
        return self._describe(state)

    def renew(self, ttl: int = 0) -> dict[str, Any]:
        """
        Re-register the stored watch.

        With ``ttl`` > 0 the call is skipped (``renewed: false``) while more
        than ``ttl`` seconds of the subscription remain.
        """
        state = self.state_store.load(self.email)
        if state is None:
            raise NotWatchingError(self.email)

        remaining = state.seconds_remaining(self._now())
        if ttl > 0 and remaining is not None and remaining > ttl:
            return {**self._describe(state), "renewed": False}

        try:
            resp = self._register(state.topic, state.label_ids, state.label_filter_action)
        except WatchOperationError as e:
            if is_not_found_error(e):
                self.state_store.delete(self.email)
                logger.warning("Gmail no longer knows the watch for %s; local state cleared", self.email)
                raise NotWatchingError(self.email) from e
            raise

        renewed = self._state_from(resp, state.topic, state.label_ids, state.label_filter_action)
        self.state_store.save(renewed)
        logger.info("Gmail watch renewed for %s until %s", self.email, renewed.expiration)
        return {**self._describe(renewed), "renewed": True}

    def stop(self) -> dict[str, Any]:
        """
        Stop the watch. A no-op (``stopped: false``) when not watching.

        The state file is removed even if Gmail's stop call fails; that
        failure is then re-raised.
        """
        state = self.state_store.load(self.email)
        if state is None:
            return {"stopped": False, "email": self.email, "reason": "not watching"}
        try:
            self._execute(self.gmail.users().stop(userId="me"), "stop")
        finally:
            self.state_store.delete(self.email)
        logger.info("Gmail watch stopped for %s", self.email)
        return {"stopped": True, "email": self.email}

    def _describe(self, state: WatchState) -> dict[str, Any]:
        remaining = state.seconds_remaining(self._now())
        return {
            "watching": True,
            "email": state.email,
            "topic": state.topic,
            "labelIds": list(state.label_ids),
            "historyId": state.history_id,
            "expiration": state.expiration.isoformat() if state.expiration else None,
            "expiresIn": remaining,
            "expired": remaining is not None and remaining <= 0,
        }


# ── Webhook configuration / authentication ────────────────────────────────────

def is_loopback(bind: str) -> bool:
    if bind.lower() == "localhost":
        return True
    try:
        return ipaddress.ip_address(bind.strip("[]")).is_loopback
    except ValueError:
        return False


@dataclass
class WebhookConfig:
    bind: str = "127.0.0.1"
    port: int = 8788
    path: str = "/gmail-pubsub"
    token: str = ""
    verify_oidc: bool = False
    oidc_email: str = ""
    oidc_audience: str = ""
    fetch_history: bool = True
    workers: int = 4

    def validate(self) -> None:
        """Reject unsafe or impossible settings before any socket is bound."""
        if not self.path.startswith("/"):
            raise WatchConfigError("--path must start with /")
        if self.port <= 0:
            raise WatchConfigError("--port must be > 0")
        if not is_loopback(self.bind) and not (self.token or self.verify_oidc):
            raise WatchConfigError(
                "--verify-oidc or --token required when binding to a non-loopback address"
            )
        if (self.oidc_email or self.oidc_audience) and not self.verify_oidc:
            raise WatchConfigError("--oidc-email/--oidc-audience need --verify-oidc")


class PushAuthenticator:
    """
    Checks every configured mechanism; all of them must pass.

    Shared token: ``X-Webhook-Token`` header or ``token`` query parameter.
    OIDC: ``Authorization: Bearer <jwt>`` signed by Google (Pub/Sub push auth).
    """

    def __init__(
        self,
        token: str = "",
        verify_oidc: bool = False,
        oidc_email: str = "",
        oidc_audience: str = "",
        verify_jwt: Callable[..., Mapping[str, Any]] = id_token.verify_oauth2_token,
    ) -> None:
        self.token = token
        self.verify_oidc = verify_oidc
        self.oidc_email = normalize_email(oidc_email)
        self.oidc_audience = oidc_audience or None
        self._verify_jwt = verify_jwt
        self._request = Request()

    @classmethod
    def from_config(cls, cfg: WebhookConfig, **kwargs: Any) -> "PushAuthenticator":
        return cls(cfg.token, cfg.verify_oidc, cfg.oidc_email, cfg.oidc_audience, **kwargs)

    def verify(self, headers: Mapping[str, str], query: Mapping[str, str]) -> bool:
        if self.token:
            supplied = headers.get(TOKEN_HEADER) or query.get("token") or ""
            if not hmac.compare_digest(supplied.encode("utf-8"), self.token.encode("utf-8")):
                logger.warning("Push request rejected: bad shared token")
                return False
        if self.verify_oidc and not self._verify_bearer(headers.get("Authorization") or ""):
            return False
        return True

    def _verify_bearer(self, header: str) -> bool:
        scheme, _, raw = header.partition(" ")
        if scheme.lower() != "bearer" or not raw:
            logger.warning("Push request rejected: missing bearer token")
            return False
        try:
            claims = self._verify_jwt(raw, self._request, audience=self.oidc_audience)
        except (ValueError, google.auth.exceptions.GoogleAuthError) as e:
            logger.warning("Push request rejected: OIDC verification failed: %s", e)
            return False
        if self.oidc_email:
            if normalize_email(claims.get("email", "")) != self.oidc_email or not claims.get("email_verified"):
                logger.warning("Push request rejected: unexpected OIDC email %s", claims.get("email"))
                return False
        return True


# ── Notification processing ───────────────────────────────────────────────────

@dataclass(frozen=True)
class PushNotification:
    email: str
    history_id: str
    message_id: str = ""


def parse_push(body: bytes) -> PushNotification:
    """Decode a Pub/Sub push envelope carrying a Gmail notification."""
    try:
        envelope = json.loads(body)
        message = envelope["message"]
        data = json.loads(base64.b64decode(message["data"]))
        return PushNotification(
            email=normalize_email(data["emailAddress"]),
            history_id=str(data["historyId"]),
            message_id=str(message.get("messageId") or message.get("message_id") or ""),
        )
    except (ValueError, KeyError, TypeError, binascii.Error) as e:
        raise ValueError(f"malformed Pub/Sub push body: {e}") from e


def _history_key(history_id: str) -> int:
    try:
        return int(history_id)
    except (TypeError, ValueError):
        return -1


def _emit_stdout(event: dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(event) + "\n")
    sys.stdout.flush()


class NotificationProcessor:
    """
    Applies notifications to the account's watch state.

    Serialized by a lock: Gmail service objects are not thread-safe, and the
    read-compare-write of the historyId must be atomic.
    """

    def __init__(
        self,
        email: str,
        state_store: WatchStateStore,
        gmail: Any = None,
        executor: Optional[RequestExecutor] = None,
        fetch_history: bool = True,
        emit: Callable[[dict[str, Any]], None] = _emit_stdout,
    ) -> None:
        self.email = normalize_email(email)
        self.state_store = state_store
        self._gmail = gmail
        self._executor = executor or RequestExecutor()
        self.fetch_history = fetch_history and gmail is not None
        self._emit = emit
        self._lock = threading.Lock()

    def process(self, note: PushNotification) -> None:
        if note.email != self.email:
            logger.info("Ignoring notification for %s (serving %s)", note.email, self.email)
            return
        with self._lock:
            state = self.state_store.load(self.email)
            if state is None:
                logger.warning("Notification for %s but no local watch state; run `gmail watch start`", self.email)
                self._emit({"email": note.email, "historyId": note.history_id, "messages": []})
                return
            if _history_key(note.history_id) <= _history_key(state.history_id):
                logger.debug("Stale notification %s <= %s ignored", note.history_id, state.history_id)
                return

            messages: list[str] = []
            if self.fetch_history and state.history_id:
                messages = self._added_messages(state.history_id)
            state.history_id = note.history_id
            state.updated_at = datetime.now(timezone.utc)
            self.state_store.save(state)
        self._emit({"email": note.email, "historyId": note.history_id, "messages": messages})

    def _added_messages(self, start_history_id: str) -> list[str]:
        ids: list[str] = []
        page_token: Optional[str] = None
        while True:
            kwargs: dict[str, Any] = dict(
                userId="me", startHistoryId=start_history_id, historyTypes=["messageAdded"]
            )
            if page_token:
                kwargs["pageToken"] = page_token
            try:
                resp = self._executor.execute(
                    self._gmail.users().history().list(**kwargs), resource="gmail history", email=self.email
                )
            except GwsctlError as e:
                if is_not_found_error(e):
                    # startHistoryId too old: Gmail only keeps about a week
                    logger.warning("History %s expired for %s; skipping to latest", start_history_id, self.email)
                    return ids
                raise
            for record in resp.get("history", []):
                for added in record.get("messagesAdded", []):
                    msg_id = added.get("message", {}).get("id")
                    if msg_id and msg_id not in ids:
                        ids.append(msg_id)
            page_token = resp.get("nextPageToken")
            if not page_token:
                return ids


# ── Webhook server ────────────────────────────────────────────────────────────

class _PushHandler(BaseHTTPRequestHandler):
    server: "_PushHTTPServer"

    def _serve(self, method: str) -> None:
        parsed = urlparse(self.path)
        query = {k: v[0] for k, v in parse_qs(parsed.query).items()}
        body = b""
        if method == "POST":
            length = int(self.headers.get("Content-Length") or 0)
            body = self.rfile.read(min(length, 1024 * 1024))
        resp = self.server.receiver.dispatch(method, parsed.path, query, self.headers, body)
        self.send_response(resp.status)
        self.send_header("Content-Type", resp.content_type)
        self.send_header("Content-Length", str(len(resp.body)))
        self.end_headers()
        self.wfile.write(resp.body)

    def do_GET(self) -> None:  # noqa: N802
        self._serve("GET")

    def do_POST(self) -> None:  # noqa: N802
        self._serve("POST")

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        logger.debug("%s - %s", self.address_string(), format % args)


class _PushHTTPServer(ThreadingHTTPServer):
    daemon_threads = True
    receiver: "WebhookReceiver"


class WebhookReceiver:
    """HTTP front for NotificationProcessor."""

    def __init__(
        self,
        cfg: WebhookConfig,
        authenticator: PushAuthenticator,
        processor: NotificationProcessor,
    ) -> None:
        cfg.validate()
        self.config = cfg
        self.authenticator = authenticator
        self.processor = processor
        self._pool = ThreadPoolExecutor(max_workers=max(1, cfg.workers), thread_name_prefix="gwsctl-push")
        self._httpd: Optional[_PushHTTPServer] = None

    def dispatch(
        self,
        method: str,
        path: str,
        query: Mapping[str, str],
        headers: Mapping[str, str],
        body: bytes,
    ) -> Response:
        if path != self.config.path:
            return Response.json(HTTPStatus.NOT_FOUND, {"error": "not found"})
        if method != "POST":
            return Response.json(HTTPStatus.METHOD_NOT_ALLOWED, {"error": "use POST"})
        if not self.authenticator.verify(headers, query):
            return Response.json(HTTPStatus.UNAUTHORIZED, {"error": "unauthorized"})
        try:
            note = parse_push(body)
        except ValueError as e:
            logger.warning("Rejected push: %s", e)
            return Response.json(HTTPStatus.BAD_REQUEST, {"error": str(e)})
        self._pool.submit(self._process, note)
        return Response(HTTPStatus.NO_CONTENT)

    def _process(self, note: PushNotification) -> None:
        try:
            self.processor.process(note)
        except Exception:
            logger.exception("Failed to process notification %s for %s", note.history_id, note.email)

    def bind(self) -> tuple[str, int]:
        httpd = _PushHTTPServer((self.config.bind, self.config.port), _PushHandler)
        httpd.receiver = self
        self._httpd = httpd
        return httpd.server_address[:2]

    def serve_forever(self) -> None:
        """Bind (if needed) and serve until KeyboardInterrupt; then release everything."""
        if self._httpd is None:
            self.bind()
        assert self._httpd is not None
        host, port = self._httpd.server_address[:2]
        logger.info("Listening for Gmail push on http://%s:%s%s", host, port, self.config.path)
        try:
            self._httpd.serve_forever()
        finally:
            self.close()

    def close(self) -> None:
        httpd, self._httpd = self._httpd, None
        if httpd is not None:
            httpd.server_close()
        self._pool.shutdown(wait=True)

    def shutdown(self) -> None:
        """Stop serve_forever from another thread."""
        if self._httpd is not None:
            self._httpd.shutdown()


def serve(
    cfg: WebhookConfig,
    email: str,
    gmail: Any = None,
    state_store: Optional[WatchStateStore] = None,
    authenticator: Optional[PushAuthenticator] = None,
) -> None:
    """Validate ``cfg`` and run the receiver until interrupted."""
    cfg.validate()
    processor = NotificationProcessor(
        email,
        state_store or WatchStateStore(),
        gmail=gmail if cfg.fetch_history else None,
        fetch_history=cfg.fetch_history,
    )
    receiver = WebhookReceiver(cfg, authenticator or PushAuthenticator.from_config(cfg), processor)
    receiver.serve_forever()
