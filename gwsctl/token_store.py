"""
Token store — durable, per-account storage for OAuth credentials.

Two interchangeable backends implement the TokenStore interface:

    KeyringTokenStore        OS credential manager via the ``keyring`` package
    EncryptedFileTokenStore  one Fernet-encrypted file, key derived (Scrypt)
                             from a password

open_store() picks one based on GWSCTL_KEYRING_BACKEND. Callers only ever
depend on TokenStore.

The file backend never stores anything unencrypted and has no built-in
password: resolve_password() either finds one (explicit value, environment,
interactive prompt) or raises KeyringPasswordRequired naming the variable.
"""
from __future__ import annotations

import base64
import getpass
import json
import logging
import os
import sys
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

import keyring
import keyring.errors
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from . import config
from .errors import KeyringPasswordRequired, StoreCorrupt, StoreError, TokenNotFound
from .models import Token, normalize_email

logger = logging.getLogger(__name__)

KEYRING_SERVICE = config.APP_NAME
_INDEX_KEY = "accounts"
_DEFAULT_KEY = "default_account"
_FILE_VERSION = 1


class TokenStore(ABC):
    """Keyed secret storage for account tokens."""

    def __init__(self) -> None:
        # Serializes mutations within this process only.
        self._lock = threading.RLock()

    @abstractmethod
    def keys(self) -> list[str]:
        """Emails with a stored token."""

    @abstractmethod
    def get_token(self, email: str) -> Token:
        """Return the token for ``email`` or raise TokenNotFound."""

    @abstractmethod
    def set_token(self, email: str, token: Token) -> None:
        ...

    @abstractmethod
    def delete_token(self, email: str) -> None:
        ...

    @abstractmethod
    def get_default_account(self) -> str:
        """Configured default email, or "" when unset."""

    @abstractmethod
    def set_default_account(self, email: str) -> None:
        ...

    def list_tokens(self) -> list[Token]:
        """All stored tokens. Order is not guaranteed; callers sort."""
        return [self.get_token(email) for email in self.keys()]


# ── Keyring backend ───────────────────────────────────────────────────────────

class KeyringTokenStore(TokenStore):
    """
    Tokens kept in the OS keyring (macOS Keychain, Secret Service, ...).

    Keyrings cannot enumerate entries, so an ``accounts`` index entry is kept
    alongside the ``token:<email>`` entries.
    """

    def __init__(self, service: str = KEYRING_SERVICE) -> None:
        super().__init__()
        self._service = service

    def _get(self, key: str) -> Optional[str]:
        try:
            return keyring.get_password(self._service, key)
        except keyring.errors.KeyringError as e:
            raise StoreError(f"keyring read failed ({key}): {e}") from e

    def _set(self, key: str, value: str) -> None:
        try:
            keyring.set_password(self._service, key, value)
        except keyring.errors.KeyringError as e:
            raise StoreError(f"keyring write failed ({key}): {e}") from e

    def _delete(self, key: str) -> None:
        try:
            keyring.delete_password(self._service, key)
        except keyring.errors.PasswordDeleteError:
            pass  # already gone
        except keyring.errors.KeyringError as e:
            raise StoreError(f"keyring delete failed ({key}): {e}") from e

    def _read_index(self) -> list[str]:
        raw = self._get(_INDEX_KEY)
        if not raw:
            return []
        try:
            index = json.loads(raw)
        except ValueError as e:
            raise StoreCorrupt(f"keyring account index is not valid JSON: {e}") from e
        if not isinstance(index, list):
            raise StoreCorrupt("keyring account index is not a list")
        return [str(e) for e in index]

    def keys(self) -> list[str]:
        return self._read_index()

    def get_token(self, email: str) -> Token:
        email = normalize_email(email)
        raw = self._get(f"token:{email}")
        if raw is None:
            raise TokenNotFound(email)
        try:
            return Token.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            raise StoreCorrupt(f"keyring token for {email} is unreadable: {e}") from e

    def set_token(self, email: str, token: Token) -> None:
        email = normalize_email(email)
        with self._lock:
            try:
                existing: Optional[Token] = self.get_token(email)
            except TokenNotFound:
                existing = None
            token = token.merged_over(existing)
            token.email = email
            self._set(f"token:{email}", json.dumps(token.to_dict()))
            index = self._read_index()
            if email not in index:
                index.append(email)
                self._set(_INDEX_KEY, json.dumps(index))
        logger.debug("Stored token for %s in keyring", email)

    def delete_token(self, email: str) -> None:
        email = normalize_email(email)
        with self._lock:
            self._delete(f"token:{email}")
            index = self._read_index()
            if email in index:
                index.remove(email)
                self._set(_INDEX_KEY, json.dumps(index))
            if self.get_default_account() == email:
                self._delete(_DEFAULT_KEY)
        logger.debug("Deleted token for %s from keyring", email)

    def get_default_account(self) -> str:
        return normalize_email(self._get(_DEFAULT_KEY) or "")

    def set_default_account(self, email: str) -> None:
        with self._lock:
            self._set(_DEFAULT_KEY, normalize_email(email))


# ── Encrypted file backend ────────────────────────────────────────────────────

@dataclass(frozen=True)
class PasswordOptions:
    """Where the file store may look for its password."""

    password: str = ""              # explicit value, wins over everything
    use_env_password: bool = True   # read GWSCTL_KEYRING_PASSWORD
    allow_prompt: bool = True       # prompt, but only on an interactive TTY


def password_func_from(
    env_password: str,
    is_tty: bool,
    prompt: Optional[Callable[[str], str]] = None,
) -> Callable[[str], str]:
    """
    Build the callback the file store uses to obtain its password.

    ``env_password`` is used when non-empty; otherwise a TTY prompt; otherwise
    the callback raises KeyringPasswordRequired naming the env variable.
    """
    def _password(message: str) -> str:
        if env_password:
            return env_password
        if is_tty:
            return (prompt or getpass.getpass)(message)
        raise KeyringPasswordRequired(
            f"no TTY available for keyring file backend password; "
            f"set {config.KEYRING_PASSWORD_ENV}"
        )

    return _password


def resolve_password(options: PasswordOptions, message: str = "Token store password: ") -> str:
    """Apply the explicit → environment → prompt precedence."""
    if options.password:
        return options.password
    env_password = os.environ.get(config.KEYRING_PASSWORD_ENV, "") if options.use_env_password else ""
    is_tty = options.allow_prompt and sys.stdin is not None and sys.stdin.isatty()
    password = password_func_from(env_password, is_tty)(message)
    if not password:
        raise KeyringPasswordRequired(
            f"empty token store password; set {config.KEYRING_PASSWORD_ENV}"
        )
    return password


def _derive_key(password: str, salt: bytes) -> bytes:
    kdf = Scrypt(salt=salt, length=32, n=2**15, r=8, p=1)
    return base64.urlsafe_b64encode(kdf.derive(password.encode("utf-8")))


class EncryptedFileTokenStore(TokenStore):
    """
    All accounts in a single encrypted JSON file.

    On-disk form: {"version": 1, "salt": <b64>, "data": <Fernet token>}.
    The decrypted payload is {"default_account": str, "tokens": {email: {...}}}.
    The password is resolved lazily, on first access.
    """

    def __init__(self, path: Path, options: PasswordOptions = PasswordOptions()) -> None:
        super().__init__()
        self.path = Path(path)
        self._options = options
        self._password: Optional[str] = None
        # salt of the file on disk and the key derived from it; one Scrypt run per salt
        self._salt: Optional[bytes] = None
        self._key: Optional[bytes] = None

    def _get_password(self) -> str:
        if self._password is None:
            self._password = resolve_password(self._options)
        return self._password

    def _fernet(self, salt: bytes) -> Fernet:
        if salt != self._salt or self._key is None:
            self._key = _derive_key(self._get_password(), salt)
            self._salt = salt
        return Fernet(self._key)

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {"default_account": "", "tokens": {}}
        try:
            envelope = json.loads(self.path.read_text(encoding="utf-8"))
            salt = base64.b64decode(envelope["salt"])
            ciphertext = envelope["data"].encode("ascii")
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise StoreCorrupt(f"token store {self.path} is malformed: {e}") from e
        if envelope.get("version") != _FILE_VERSION:
            raise StoreCorrupt(f"token store {self.path} has unsupported version {envelope.get('version')!r}")

        fernet = self._fernet(salt)
        try:
            payload = json.loads(fernet.decrypt(ciphertext))
        except InvalidToken as e:
            raise StoreCorrupt(
                f"cannot decrypt token store {self.path} (wrong password or corrupted file)"
            ) from e
        except ValueError as e:
            raise StoreCorrupt(f"token store {self.path} payload is not JSON: {e}") from e
        if not isinstance(payload, dict) or not isinstance(payload.get("tokens"), dict):
            raise StoreCorrupt(f"token store {self.path} payload has unexpected shape")
        payload.setdefault("default_account", "")
        return payload

    def _save(self, payload: dict[str, Any]) -> None:
        salt = self._salt or os.urandom(16)
        fernet = self._fernet(salt)
        envelope = {
            "version": _FILE_VERSION,
            "salt": base64.b64encode(salt).decode("ascii"),
            "data": fernet.encrypt(json.dumps(payload).encode("utf-8")).decode("ascii"),
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".tokens-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(envelope, f)
            os.chmod(tmp, 0o600)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._load()["tokens"])

    def get_token(self, email: str) -> Token:
        email = normalize_email(email)
        with self._lock:
            data = self._load()["tokens"].get(email)
        if data is None:
            raise TokenNotFound(email)
        try:
            return Token.from_dict(data)
        except (ValueError, KeyError, TypeError) as e:
            raise StoreCorrupt(f"stored token for {email} is unreadable: {e}") from e

    def list_tokens(self) -> list[Token]:
        with self._lock:
            tokens = self._load()["tokens"]
        try:
            return [Token.from_dict(t) for t in tokens.values()]
        except (ValueError, KeyError, TypeError) as e:
            raise StoreCorrupt(f"token store {self.path} holds an unreadable token: {e}") from e

    def set_token(self, email: str, token: Token) -> None:
        email = normalize_email(email)
        with self._lock:
            payload = self._load()
            existing_raw = payload["tokens"].get(email)
            existing = Token.from_dict(existing_raw) if existing_raw else None
            token = token.merged_over(existing)
            token.email = email
            if token.created_at is None:
                token.created_at = datetime.now(timezone.utc)
            payload["tokens"][email] = token.to_dict()
            self._save(payload)
        logger.debug("Stored token for %s in %s", email, self.path)

    def delete_token(self, email: str) -> None:
        email = normalize_email(email)
        with self._lock:
            payload = self._load()
            if email not in payload["tokens"] and payload["default_account"] != email:
                return
            payload["tokens"].pop(email, None)
            if payload["default_account"] == email:
                payload["default_account"] = ""
            self._save(payload)
        logger.debug("Deleted token for %s from %s", email, self.path)

    def get_default_account(self) -> str:
        with self._lock:
            return normalize_email(self._load()["default_account"])

    def set_default_account(self, email: str) -> None:
        email = normalize_email(email)
        with self._lock:
            payload = self._load()
            if payload["default_account"] == email:
                return
            payload["default_account"] = email
            self._save(payload)


# ── Backend selection ─────────────────────────────────────────────────────────

def _os_keyring_available() -> bool:
    backend = keyring.get_keyring()
    return type(backend).__module__ != "keyring.backends.fail"


def open_store(options: PasswordOptions = PasswordOptions(), backend: str = "") -> TokenStore:
    """
    Return the configured token store.

    backend: "keyring", "file" or "auto" (default from GWSCTL_KEYRING_BACKEND).
    "auto" uses the OS keyring when one is available, else the encrypted file.
    """
    backend = (backend or config.keyring_backend()).lower()
    if backend not in ("auto", "keyring", "file"):
        raise StoreError(
            f"unknown {config.KEYRING_BACKEND_ENV} value {backend!r} (expected auto, keyring or file)"
        )
    if backend == "keyring" or (backend == "auto" and _os_keyring_available()):
        logger.debug("Using OS keyring token store")
        return KeyringTokenStore()
    path = config.token_file()
    logger.debug("Using encrypted file token store at %s", path)
    return EncryptedFileTokenStore(path, options)
