"""
AccountRegistry — read model over the token store.

Computes AccountInfo lists (default first) and resolves which account a
command should run as. The default-account fallback happens at read time
only; nothing here writes a default the user did not ask for.
"""
from __future__ import annotations

import logging

from . import config
from .errors import AccountNotFound, NoAccountsConfigured
from .models import AccountInfo, normalize_email
from .token_store import TokenStore

logger = logging.getLogger(__name__)


class AccountRegistry:
    """
    Usage:
        registry = AccountRegistry(open_store())
        email    = registry.resolve(args.account)
        for acct in registry.list():
            print(acct.email, acct.is_default)
    """

    def __init__(self, store: TokenStore) -> None:
        self.store = store

    def list(self) -> list[AccountInfo]:
        """
        Accounts ordered by email, with the default moved to the front.

        If the stored default is unset or names a removed account, the first
        account is reported as default instead.
        """
        tokens = sorted(self.store.list_tokens(), key=lambda t: t.email)
        if not tokens:
            return []

        default = normalize_email(self.store.get_default_account())
        emails = [t.email for t in tokens]
        if default not in emails:
            default = emails[0]

        accounts = [
            AccountInfo(email=t.email, services=sorted(t.services), is_default=t.email == default)
            for t in tokens
        ]
        accounts.sort(key=lambda a: not a.is_default)  # stable: keeps email order
        return accounts

    def default_account(self) -> str:
        accounts = self.list()
        if not accounts:
            raise NoAccountsConfigured()
        return accounts[0].email

    def exists(self, email: str) -> bool:
        return normalize_email(email) in {normalize_email(k) for k in self.store.keys()}

    def resolve(self, explicit: str = "") -> str:
        """
        Pick the account for a command.

        explicit → GWSCTL_ACCOUNT → default account. An explicit or env
        email that is not stored raises AccountNotFound.
        """
        email = normalize_email(explicit) or normalize_email(config.env_account())
        if email:
            if not self.exists(email):
                raise AccountNotFound(email)
            return email
        return self.default_account()

    def set_default(self, email: str) -> list[AccountInfo]:
        email = normalize_email(email)
        if not self.exists(email):
            raise AccountNotFound(email)
        self.store.set_default_account(email)
        logger.info("Default account set to %s", email)
        return self.list()

    def remove(self, email: str) -> list[AccountInfo]:
        email = normalize_email(email)
        if not self.exists(email):
            raise AccountNotFound(email)
        self.store.delete_token(email)
        logger.info("Removed account %s", email)
        return self.list()
