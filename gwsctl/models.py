"""
Typed data models for credentials, accounts and watch subscriptions.

All classes are plain dataclasses. Persistence and business logic live in
token_store, accounts and gmail_watch, not here.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


def normalize_email(email: str) -> str:
    """Canonical form used as the key for every per-account record."""
    return (email or "").strip().lower()


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _format_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ── Tokens ────────────────────────────────────────────────────────────────────

@dataclass
class Token:
    """OAuth credential for one account, as kept in the token store."""

    email: str
    services: list[str] = field(default_factory=list)
    scopes: list[str] = field(default_factory=list)
    access_token: str = ""
    refresh_token: str = ""
    expiry: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.email = normalize_email(self.email)

    @property
    def expired(self) -> bool:
        if self.expiry is None:
            return False
        return self.expiry <= datetime.now(timezone.utc)

    def merged_over(self, existing: Optional["Token"]) -> "Token":
        """
        Return a copy of this token that keeps the refresh token of
        ``existing`` when this one carries none.
        """
        if existing is None or self.refresh_token or not existing.refresh_token:
            return self
        return Token(
            email=self.email,
            services=list(self.services or existing.services),
            scopes=list(self.scopes or existing.scopes),
            access_token=self.access_token,
            refresh_token=existing.refresh_token,
            expiry=self.expiry,
            created_at=self.created_at or existing.created_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "email": self.email,
            "services": list(self.services),
            "scopes": list(self.scopes),
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expiry": _format_dt(self.expiry),
            "created_at": _format_dt(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Token":
        return cls(
            email=data["email"],
            services=list(data.get("services") or []),
            scopes=list(data.get("scopes") or []),
            access_token=data.get("access_token") or "",
            refresh_token=data.get("refresh_token") or "",
            expiry=_parse_dt(data.get("expiry")),
            created_at=_parse_dt(data.get("created_at")),
        )


# ── Accounts ──────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class AccountInfo:
    """Read-only view of a stored account, computed at read time."""

    email: str
    services: list[str]
    is_default: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "email": self.email,
            "services": list(self.services),
            "isDefault": self.is_default,
        }


# ── Gmail watch ───────────────────────────────────────────────────────────────

@dataclass
class WatchState:
    """Local record of an active Gmail push subscription."""

    email: str
    topic: str
    label_ids: list[str] = field(default_factory=list)
    label_filter_action: str = "include"
    history_id: str = ""
    expiration: Optional[datetime] = None   # provider-side expiry
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.email = normalize_email(self.email)

    def seconds_remaining(self, now: Optional[datetime] = None) -> Optional[int]:
        if self.expiration is None:
            return None
        now = now or datetime.now(timezone.utc)
        return int((self.expiration - now).total_seconds())

    @property
    def expired(self) -> bool:
        remaining = self.seconds_remaining()
        return remaining is not None and remaining <= 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "email": self.email,
            "topic": self.topic,
            "labelIds": list(self.label_ids),
            "labelFilterAction": self.label_filter_action,
            "historyId": self.history_id,
            "expiration": _format_dt(self.expiration),
            "updatedAt": _format_dt(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WatchState":
        return cls(
            email=data["email"],
            topic=data.get("topic", ""),
            label_ids=list(data.get("labelIds") or []),
            label_filter_action=data.get("labelFilterAction") or "include",
            history_id=str(data.get("historyId") or ""),
            expiration=_parse_dt(data.get("expiration")),
            updated_at=_parse_dt(data.get("updatedAt")),
        )


def expiration_from_millis(value: Any) -> Optional[datetime]:
    """Gmail reports watch expiration as epoch milliseconds in a string."""
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
