"""
gwsctl command line.

Usage:
    gwsctl auth add --services gmail,drive
    gwsctl auth list
    gwsctl auth manage
    gwsctl auth set-default me@example.com
    gwsctl --force auth remove old@example.com

    gwsctl gmail watch start --topic projects/p/topics/gmail --label INBOX
    gwsctl gmail watch status
    gwsctl gmail watch renew --ttl 86400
    gwsctl gmail watch serve --bind 0.0.0.0 --port 8788 --verify-oidc --oidc-email push@p.iam.gserviceaccount.com
    gwsctl --force gmail watch stop

Results go to stdout (``--json`` for machine-readable output); logs go to
stderr and <config>/logs/gwsctl.log.
"""
from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from typing import Any, Optional

from .accounts import AccountRegistry
from .base import BaseCommand, setup_logging
from .errors import GwsctlError
from .gmail_watch import GmailWatcher, WebhookConfig, serve
from .google_factory import DEFAULT_SERVICES, GoogleServiceFactory
from .oauth_server import (
    OUTCOME_AUTHORIZED,
    OUTCOME_FAILED,
    GoogleTokenExchanger,
    ManageServer,
)
from .token_store import PasswordOptions, TokenStore, open_store

logger = logging.getLogger(__name__)


def confirm_destructive(args: argparse.Namespace, action: str) -> None:
    """Ask before destroying something unless --force; refuse under --no-input."""
    if getattr(args, "force", False):
        return
    if getattr(args, "no_input", False) or not sys.stdin.isatty():
        raise GwsctlError(f"refusing to {action} without --force (non-interactive)")
    answer = input(f"Proceed to {action}? [y/N] ").strip().lower()
    if answer not in ("y", "yes"):
        raise GwsctlError(f"aborted: did not {action}")


class StoreCommand(BaseCommand):
    """Commands that need the token store."""

    _store: Optional[TokenStore] = None

    @property
    def store(self) -> TokenStore:
        if self._store is None:
            self._store = open_store(PasswordOptions(allow_prompt=not getattr(self.args, "no_input", False)))
        return self._store

    @property
    def registry(self) -> AccountRegistry:
        return AccountRegistry(self.store)


# ── auth ──────────────────────────────────────────────────────────────────────

def _services_arg(value: str) -> list[str]:
    services = [s.strip().lower() for s in value.split(",") if s.strip()]
    if not services:
        raise argparse.ArgumentTypeError("at least one service is required")
    return services


class _InteractiveAuth(StoreCommand):
    start_path = "/"

    @classmethod
    def add_arguments(cls, parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            "--services", type=_services_arg, default=list(DEFAULT_SERVICES),
            help=f"Comma-separated services to authorize (default: {','.join(DEFAULT_SERVICES)}).",
        )
        parser.add_argument(
            "--timeout", type=float, default=300.0, metavar="SECS",
            help="Give up after this many seconds (default: 300).",
        )
        parser.add_argument(
            "--no-browser", action="store_true",
            help="Print the URL instead of opening a browser.",
        )

    def run(self) -> dict[str, Any]:
        exchanger = GoogleTokenExchanger(self.args.services)
        server = ManageServer(self.store, exchanger, timeout=self.args.timeout)
        result = server.run(
            path=self.start_path,
            open_browser=not self.args.no_browser,
            on_ready=lambda url: print(f"Open this URL in your browser:\n  {url}", file=sys.stderr),
        )
        if result.outcome == OUTCOME_FAILED and result.error is not None:
            raise result.error
        out: dict[str, Any] = {"outcome": result.outcome}
        if result.outcome == OUTCOME_AUTHORIZED:
            out["email"] = result.email
            out["services"] = list(self.args.services)
        return out


class AuthAdd(_InteractiveAuth):
    name = "auth add"
    start_path = "/auth/start"


class AuthManage(_InteractiveAuth):
    name = "auth manage"


class AuthList(StoreCommand):
    name = "auth list"

    def run(self) -> dict[str, Any]:
        return {"accounts": [a.to_dict() for a in self.registry.list()]}


class AuthSetDefault(StoreCommand):
    name = "auth set-default"

    @classmethod
    def add_arguments(cls, parser: argparse.ArgumentParser) -> None:
        parser.add_argument("email")

    def run(self) -> dict[str, Any]:
        accounts = self.registry.set_default(self.args.email)
        return {"default": accounts[0].email}


class AuthRemove(StoreCommand):
    name = "auth remove"

    @classmethod
    def add_arguments(cls, parser: argparse.ArgumentParser) -> None:
        parser.add_argument("email")

    def run(self) -> dict[str, Any]:
        registry = self.registry
        email = registry.resolve(self.args.email)
        confirm_destructive(self.args, f"remove account {email}")
        registry.remove(email)
        return {"removed": email}


# ── gmail watch ───────────────────────────────────────────────────────────────

class WatchCommand(StoreCommand):
    def watcher(self) -> GmailWatcher:
        email = self.registry.resolve(self.args.account or "")
        return GmailWatcher(email, gmail_factory=lambda: GoogleServiceFactory(email, self.store).gmail)


class WatchStart(WatchCommand):
    name = "gmail watch start"

    @classmethod
    def add_arguments(cls, parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--topic", required=True, help="Pub/Sub topic: projects/<project>/topics/<topic>.")
        parser.add_argument(
            "--label", dest="labels", action="append", default=[], metavar="LABEL",
            help="Label id or name to watch (repeatable; default: all mail).",
        )
        parser.add_argument("--label-filter-action", choices=["include", "exclude"], default="include")

    def run(self) -> dict[str, Any]:
        return self.watcher().start(self.args.topic, self.args.labels, self.args.label_filter_action)


class WatchStatus(WatchCommand):
    name = "gmail watch status"

    def run(self) -> dict[str, Any]:
        return self.watcher().status()


class WatchRenew(WatchCommand):
    name = "gmail watch renew"

    @classmethod
    def add_arguments(cls, parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            "--ttl", type=int, default=0, metavar="SECS",
            help="Only renew when fewer than SECS seconds remain (default: always renew).",
        )

    def run(self) -> dict[str, Any]:
        return self.watcher().renew(ttl=self.args.ttl)


class WatchStop(WatchCommand):
    name = "gmail watch stop"

    def run(self) -> dict[str, Any]:
        watcher = self.watcher()
        if not watcher.status()["watching"]:
            return watcher.stop()
        confirm_destructive(self.args, f"stop gmail watch for {watcher.email}")
        return watcher.stop()


class WatchServe(WatchCommand):
    name = "gmail watch serve"

    @classmethod
    def add_arguments(cls, parser: argparse.ArgumentParser) -> None:
        defaults = WebhookConfig()
        parser.add_argument("--bind", default=defaults.bind)
        parser.add_argument("--port", type=int, default=defaults.port)
        parser.add_argument("--path", default=defaults.path)
        parser.add_argument("--token", default="", help="Shared secret (X-Webhook-Token header or ?token=).")
        parser.add_argument("--verify-oidc", action="store_true", help="Require a Google-signed OIDC bearer token.")
        parser.add_argument("--oidc-email", default="", help="Expected service account email in the OIDC token.")
        parser.add_argument("--oidc-audience", default="", help="Expected audience in the OIDC token.")
        parser.add_argument("--no-fetch", action="store_true", help="Do not fetch history for notifications.")

    def run(self) -> dict[str, Any]:
        cfg = WebhookConfig(
            bind=self.args.bind,
            port=self.args.port,
            path=self.args.path,
            token=self.args.token,
            verify_oidc=self.args.verify_oidc,
            oidc_email=self.args.oidc_email,
            oidc_audience=self.args.oidc_audience,
            fetch_history=not self.args.no_fetch,
        )
        cfg.validate()  # before touching credentials or sockets
        email = self.registry.resolve(self.args.account or "")
        gmail = GoogleServiceFactory(email, self.store).gmail if cfg.fetch_history else None
        try:
            serve(cfg, email, gmail=gmail)
        except KeyboardInterrupt:
            pass
        return {"served": True, "email": email}


# ── Parser / entry point ──────────────────────────────────────────────────────

def _add(subparsers: Any, name: str, command: type[BaseCommand], help: str) -> None:
    parser = subparsers.add_parser(name, help=help, description=help)
    command.add_arguments(parser)
    parser.set_defaults(command=command)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="gwsctl", description="Google Workspace accounts and Gmail watch.")
    parser.add_argument("--account", "-a", default="", metavar="EMAIL",
                        help="Account to use (default: GWSCTL_ACCOUNT, then the default account).")
    parser.add_argument("--json", action="store_true", help="Print results as JSON.")
    parser.add_argument("--force", action="store_true", help="Skip confirmation for destructive commands.")
    parser.add_argument("--no-input", action="store_true", help="Never prompt; fail instead.")
    parser.add_argument("--debug", action="store_true", help="Enable DEBUG-level logging.")

    groups = parser.add_subparsers(dest="group", required=True)

    auth = groups.add_parser("auth", help="Manage authorized accounts.").add_subparsers(dest="action", required=True)
    _add(auth, "add", AuthAdd, "Authorize a new account in the browser.")
    _add(auth, "manage", AuthManage, "Open the local accounts page.")
    _add(auth, "list", AuthList, "List accounts (default first).")
    _add(auth, "set-default", AuthSetDefault, "Make an account the default.")
    _add(auth, "remove", AuthRemove, "Remove an account's stored credentials.")

    gmail = groups.add_parser("gmail", help="Gmail commands.").add_subparsers(dest="gmail_group", required=True)
    watch = gmail.add_parser("watch", help="Gmail push notifications.").add_subparsers(dest="action", required=True)
    _add(watch, "start", WatchStart, "Start a Gmail watch on a Pub/Sub topic.")
    _add(watch, "status", WatchStatus, "Show the local watch state.")
    _add(watch, "renew", WatchRenew, "Re-register the current watch.")
    _add(watch, "stop", WatchStop, "Stop the watch and clear local state.")
    _add(watch, "serve", WatchServe, "Receive Pub/Sub push notifications over HTTP.")
    return parser


def _raise_interrupt(signum: int, frame: Any) -> None:
    raise KeyboardInterrupt


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(logging.DEBUG if args.debug else logging.WARNING)
    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGTERM, _raise_interrupt)

    command: BaseCommand = args.command(args)
    try:
        return command.execute()
    except KeyboardInterrupt:
        print("interrupted", file=sys.stderr)
        return 130
    except (GwsctlError, FileNotFoundError, ValueError) as e:
        logger.debug("%s failed", command.name, exc_info=True)
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
