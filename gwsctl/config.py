"""
Runtime configuration for gwsctl.

Everything is environment-driven. A ``.env`` file inside the config directory
is loaded once at import time, so values can live there instead of the shell
profile. Paths are resolved on each call so tests (and users) can point
GWSCTL_CONFIG_DIR somewhere else without re-importing.

Environment variables:
    GWSCTL_CONFIG_DIR          config/state root (default ~/.config/gwsctl)
    GWSCTL_CLIENT_SECRET_FILE  OAuth client JSON (default <config>/credentials.json)
    GWSCTL_KEYRING_BACKEND     auto | keyring | file
    GWSCTL_KEYRING_PASSWORD    password for the encrypted file token store
    GWSCTL_ACCOUNT             account used when --account is omitted
"""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

APP_NAME = "gwsctl"

CONFIG_DIR_ENV = "GWSCTL_CONFIG_DIR"
CLIENT_SECRET_FILE_ENV = "GWSCTL_CLIENT_SECRET_FILE"
KEYRING_BACKEND_ENV = "GWSCTL_KEYRING_BACKEND"
KEYRING_PASSWORD_ENV = "GWSCTL_KEYRING_PASSWORD"
ACCOUNT_ENV = "GWSCTL_ACCOUNT"

DEFAULT_CONFIG_DIR = "~/.config/gwsctl"


def config_dir() -> Path:
    """Root directory for tokens, state files and logs."""
    return Path(os.environ.get(CONFIG_DIR_ENV, DEFAULT_CONFIG_DIR)).expanduser()


def state_dir() -> Path:
    return config_dir() / "state"


def logs_dir() -> Path:
    return config_dir() / "logs"


def token_file() -> Path:
    """Location of the encrypted file token store."""
    return config_dir() / "tokens.enc"


def client_secret_file() -> Path:
    return Path(
        os.environ.get(CLIENT_SECRET_FILE_ENV, str(config_dir() / "credentials.json"))
    ).expanduser()


def keyring_backend() -> str:
    return os.environ.get(KEYRING_BACKEND_ENV, "auto").strip().lower() or "auto"


def env_account() -> str:
    return os.environ.get(ACCOUNT_ENV, "").strip()


def load_client_config() -> dict[str, Any]:
    """
    Read the OAuth client JSON downloaded from Cloud Console.

    Both "installed" and "web" client types are accepted; the result is
    always keyed the way google_auth_oauthlib expects.
    """
    path = client_secret_file()
    if not path.exists():
        raise FileNotFoundError(
            f"OAuth client file not found: {path} "
            f"(download it from Cloud Console or set {CLIENT_SECRET_FILE_ENV})"
        )
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if "installed" not in data and "web" not in data:
        raise ValueError(f"{path} is not an OAuth client file (no 'installed' or 'web' key)")
    return data


def client_credentials() -> tuple[str, str, str]:
    """Return (client_id, client_secret, token_uri) from the client file."""
    data = load_client_config()
    section = data.get("installed") or data.get("web")
    return (
        section["client_id"],
        section["client_secret"],
        section.get("token_uri", "https://oauth2.googleapis.com/token"),
    )


load_dotenv(config_dir() / ".env")
