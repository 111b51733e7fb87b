"""
Tests for the gwsctl command line: argument handling, confirmation of
destructive commands and end-to-end runs against a file token store.
"""

import argparse
import builtins
import contextlib
import getpass
import io
import json
import sys

import pytest

from gwsctl import config
from gwsctl.base import emit
from gwsctl.cli import build_parser, confirm_destructive, main
from gwsctl.errors import GwsctlError
from gwsctl.gmail_watch import WatchStateStore
from gwsctl.models import WatchState
from gwsctl.token_store import EncryptedFileTokenStore, PasswordOptions

from conftest import make_token


class _TTY:
    def isatty(self):
        return True


@pytest.fixture
def file_backend(monkeypatch):
    monkeypatch.setenv("GWSCTL_KEYRING_BACKEND", "file")
    monkeypatch.setenv("GWSCTL_KEYRING_PASSWORD", "pw")
    return EncryptedFileTokenStore(config.token_file(), PasswordOptions(password="pw"))


@pytest.fixture
def two_accounts(file_backend):
    file_backend.set_token("a@b.com", make_token("a@b.com", ["gmail"]))
    file_backend.set_token("c@d.com", make_token("c@d.com", ["drive"]))
    return file_backend


def run_json(capsys, *argv):
    code = main(["--json", *argv])
    out = capsys.readouterr().out
    return code, json.loads(out) if out else None


class TestConfirmDestructive:
    def test_force(self):
        confirm_destructive(argparse.Namespace(force=True, no_input=True), "remove x")

    def test_no_input_refuses(self):
        with pytest.raises(GwsctlError) as exc:
            confirm_destructive(argparse.Namespace(force=False, no_input=True), "remove x")
        assert "refusing" in str(exc.value)

    def test_non_tty_refuses(self, monkeypatch):
        monkeypatch.setattr(sys, "stdin", io.StringIO())
        with pytest.raises(GwsctlError) as exc:
            confirm_destructive(argparse.Namespace(force=False, no_input=False), "remove x")
        assert "refusing" in str(exc.value)

    def test_interactive_yes(self, monkeypatch):
        monkeypatch.setattr(sys, "stdin", _TTY())
        monkeypatch.setattr(builtins, "input", lambda prompt: "y")
        confirm_destructive(argparse.Namespace(force=False, no_input=False), "remove x")

    def test_interactive_no(self, monkeypatch):
        monkeypatch.setattr(sys, "stdin", _TTY())
        monkeypatch.setattr(builtins, "input", lambda prompt: "")
        with pytest.raises(GwsctlError):
            confirm_destructive(argparse.Namespace(force=False, no_input=False), "remove x")


class TestParser:
    def test_global_flags(self):
        args = build_parser().parse_args(["-a", "x@y.com", "--json", "--force", "auth", "list"])
        assert args.account == "x@y.com" and args.json and args.force

    def test_services_split(self):
        args = build_parser().parse_args(["auth", "add", "--services", "gmail, drive"])
        assert args.services == ["gmail", "drive"]

    def test_watch_labels_repeat(self):
        args = build_parser().parse_args(
            ["gmail", "watch", "start", "--topic", "projects/p/topics/t", "--label", "INBOX", "--label", "Custom"]
        )
        assert args.labels == ["INBOX", "Custom"]
        assert args.label_filter_action == "include"

    def test_subcommand_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestAuthCommands:
    def test_list(self, two_accounts, capsys):
        code, out = run_json(capsys, "auth", "list")
        assert code == 0
        assert out == {"accounts": [
            {"email": "a@b.com", "services": ["gmail"], "isDefault": True},
            {"email": "c@d.com", "services": ["drive"], "isDefault": False},
        ]}

    def test_set_default(self, two_accounts, capsys):
        code, out = run_json(capsys, "auth", "set-default", "C@D.com")
        assert code == 0
        assert out == {"default": "c@d.com"}
        assert two_accounts.get_default_account() == "c@d.com"

    def test_set_default_unknown(self, two_accounts, capsys):
        assert main(["auth", "set-default", "x@y.com"]) == 1
        assert "account not found: x@y.com" in capsys.readouterr().err

    def test_remove_refused_without_force(self, two_accounts, capsys):
        assert main(["--no-input", "auth", "remove", "a@b.com"]) == 1
        assert "refusing" in capsys.readouterr().err
        assert "a@b.com" in two_accounts.keys()

    def test_remove_with_force(self, two_accounts, capsys):
        code, out = run_json(capsys, "--force", "auth", "remove", "a@b.com")
        assert code == 0
        assert out == {"removed": "a@b.com"}
        assert two_accounts.keys() == ["c@d.com"]

    def test_missing_password(self, monkeypatch, file_backend, capsys):
        file_backend.set_token("a@b.com", make_token("a@b.com"))
        monkeypatch.delenv("GWSCTL_KEYRING_PASSWORD")
        monkeypatch.setattr(sys, "stdin", io.StringIO())
        assert main(["auth", "list"]) == 1
        assert "GWSCTL_KEYRING_PASSWORD" in capsys.readouterr().err

    def test_no_input_never_prompts_for_password(self, monkeypatch, file_backend, capsys):
        file_backend.set_token("a@b.com", make_token("a@b.com"))
        monkeypatch.delenv("GWSCTL_KEYRING_PASSWORD")
        monkeypatch.setattr(sys, "stdin", _TTY())
        prompts = []
        monkeypatch.setattr(getpass, "getpass", lambda message: prompts.append(message) or "pw")
        assert main(["--no-input", "auth", "list"]) == 1
        assert prompts == []
        assert "GWSCTL_KEYRING_PASSWORD" in capsys.readouterr().err

    def test_password_prompt_on_tty(self, monkeypatch, file_backend, capsys):
        file_backend.set_token("a@b.com", make_token("a@b.com"))
        monkeypatch.delenv("GWSCTL_KEYRING_PASSWORD")
        monkeypatch.setattr(sys, "stdin", _TTY())
        prompts = []
        monkeypatch.setattr(getpass, "getpass", lambda message: prompts.append(message) or "pw")
        code, out = run_json(capsys, "auth", "list")
        assert code == 0
        assert len(prompts) == 1
        assert out["accounts"][0]["email"] == "a@b.com"


class TestWatchCommands:
    def test_serve_validation_before_account(self, capsys):
        # no store configured at all: validation must fail first
        assert main(["gmail", "watch", "serve", "--port", "0"]) == 1
        assert "--port must be > 0" in capsys.readouterr().err

    def test_serve_public_bind_needs_auth(self, capsys):
        assert main(["gmail", "watch", "serve", "--bind", "0.0.0.0"]) == 1
        assert "--verify-oidc or --token required" in capsys.readouterr().err

    def test_serve_bad_path(self, capsys):
        assert main(["gmail", "watch", "serve", "--path", "hook"]) == 1
        assert "--path must start" in capsys.readouterr().err

    def test_status_not_watching(self, two_accounts, capsys):
        code, out = run_json(capsys, "gmail", "watch", "status")
        assert code == 0
        assert out == {"watching": False, "email": "a@b.com"}

    def test_status_uses_account_flag(self, two_accounts, capsys):
        WatchStateStore().save(WatchState("c@d.com", "projects/p/topics/t", history_id="9"))
        code, out = run_json(capsys, "-a", "c@d.com", "gmail", "watch", "status")
        assert code == 0
        assert out["watching"] is True
        assert out["historyId"] == "9"

    def test_status_account_from_env(self, two_accounts, monkeypatch, capsys):
        monkeypatch.setenv("GWSCTL_ACCOUNT", "c@d.com")
        code, out = run_json(capsys, "gmail", "watch", "status")
        assert out["email"] == "c@d.com"

    def test_stop_not_watching(self, two_accounts, capsys):
        code, out = run_json(capsys, "gmail", "watch", "stop")
        assert code == 0
        assert out["stopped"] is False

    def test_renew_not_watching(self, two_accounts, capsys):
        assert main(["gmail", "watch", "renew"]) == 1
        assert "not active" in capsys.readouterr().err

    def test_no_accounts(self, file_backend, capsys):
        assert main(["gmail", "watch", "status"]) == 1
        assert "no accounts configured" in capsys.readouterr().err


class TestEmit:
    def test_text_output(self):
        out = io.StringIO()
        emit({"watching": True, "labelIds": ["INBOX", "Label_1"], "expiration": None,
              "accounts": [{"email": "a@b.com", "isDefault": True}]}, as_json=False, out=out)
        assert out.getvalue().splitlines() == [
            "watching: yes",
            "labelIds: INBOX, Label_1",
            "expiration: -",
            "accounts:",
            "  a@b.com\tyes",
        ]

    def test_json_output(self):
        out = io.StringIO()
        emit({"stopped": False}, as_json=True, out=out)
        assert json.loads(out.getvalue()) == {"stopped": False}

    def test_default_stream_follows_redirected_stdout(self):
        buf = io.StringIO()
        with contextlib.redirect_stdout(buf):
            emit({"removed": "a@b.com"}, as_json=True)
        assert json.loads(buf.getvalue()) == {"removed": "a@b.com"}
