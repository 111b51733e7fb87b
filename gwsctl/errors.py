"""
Error taxonomy shared by the token store, OAuth manager and watch lifecycle.

Google API failures are tagged with an ErrorKind; callers branch on the kind
(via the is_*_error helpers) rather than on class identity or message text.
"""
from __future__ import annotations

import enum
import json
from typing import Any, Optional

from googleapiclient.errors import HttpError


class GwsctlError(Exception):
    """Base class for every error raised by gwsctl."""


# ── Google API errors ─────────────────────────────────────────────────────────

class ErrorKind(enum.Enum):
    AUTH_REQUIRED = "auth_required"
    RATE_LIMIT = "rate_limit"
    CIRCUIT_BREAKER = "circuit_breaker"
    QUOTA_EXCEEDED = "quota_exceeded"
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"


class GoogleAPIError(GwsctlError):
    kind: ErrorKind


class AuthRequiredError(GoogleAPIError):
    kind = ErrorKind.AUTH_REQUIRED

    def __init__(self, service: str, email: str, cause: Optional[BaseException] = None) -> None:
        self.service = service
        self.email = email
        self.cause = cause
        msg = f"auth required for {service} {email}".rstrip()
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg)


class RateLimitError(GoogleAPIError):
    kind = ErrorKind.RATE_LIMIT

    def __init__(self, retry_after: float = 0, retries: int = 0) -> None:
        self.retry_after = retry_after
        self.retries = retries
        if retry_after > 0:
            msg = f"rate limit exceeded, retry after {retry_after:g}s"
        else:
            msg = "rate limit exceeded"
        if retries > 0:
            msg += f" (after {retries} retries)"
        super().__init__(msg)


class CircuitBreakerError(GoogleAPIError):
    kind = ErrorKind.CIRCUIT_BREAKER

    def __init__(self) -> None:
        super().__init__("circuit breaker is open, too many recent failures - try again later")


class QuotaExceededError(GoogleAPIError):
    kind = ErrorKind.QUOTA_EXCEEDED

    def __init__(self, resource: str) -> None:
        self.resource = resource
        super().__init__(f"API quota exceeded for {resource}")


class NotFoundError(GoogleAPIError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, resource: str, id: str = "") -> None:
        self.resource = resource
        self.id = id
        msg = f"{resource} not found"
        if id:
            msg += f": {id}"
        super().__init__(msg)


class PermissionDeniedError(GoogleAPIError):
    kind = ErrorKind.PERMISSION_DENIED

    def __init__(self, resource: str, action: str = "") -> None:
        self.resource = resource
        self.action = action
        if action:
            msg = f"permission denied: cannot {action} {resource}"
        else:
            msg = f"permission denied for {resource}"
        super().__init__(msg)


class GoogleAPIOperationError(GwsctlError):
    """An API failure outside the tagged kinds (5xx, 400, ...)."""


def error_kind(err: BaseException) -> Optional[ErrorKind]:
    """Kind of a Google API error, following __cause__ chains; None otherwise."""
    seen = 0
    while err is not None and seen < 10:
        kind = getattr(err, "kind", None)
        if isinstance(kind, ErrorKind):
            return kind
        err = err.__cause__
        seen += 1
    return None


def is_auth_required_error(err: BaseException) -> bool:
    return error_kind(err) is ErrorKind.AUTH_REQUIRED


def is_rate_limit_error(err: BaseException) -> bool:
    return error_kind(err) is ErrorKind.RATE_LIMIT


def is_circuit_breaker_error(err: BaseException) -> bool:
    return error_kind(err) is ErrorKind.CIRCUIT_BREAKER


def is_quota_exceeded_error(err: BaseException) -> bool:
    return error_kind(err) is ErrorKind.QUOTA_EXCEEDED


def is_not_found_error(err: BaseException) -> bool:
    return error_kind(err) is ErrorKind.NOT_FOUND


def is_permission_denied_error(err: BaseException) -> bool:
    return error_kind(err) is ErrorKind.PERMISSION_DENIED


def _error_reasons(err: HttpError) -> list[str]:
    """Pull the ``reason`` fields out of a Google JSON error body."""
    try:
        body: Any = json.loads(err.content.decode("utf-8"))
    except (ValueError, AttributeError, UnicodeDecodeError):
        return []
    if not isinstance(body, dict):
        return []
    details = (body.get("error") or {}).get("errors") or []
    return [d.get("reason", "") for d in details if isinstance(d, dict)]


def classify_http_error(
    err: HttpError,
    resource: str,
    id: str = "",
    action: str = "",
    service: str = "",
    email: str = "",
) -> GwsctlError:
    """Map a googleapiclient HttpError onto the taxonomy; unknown codes pass through."""
    status = int(getattr(err.resp, "status", 0) or 0)
    reasons = _error_reasons(err)

    if status == 401:
        return AuthRequiredError(service or resource, email, err)
    if status == 404:
        return NotFoundError(resource, id)
    if status == 429 or "rateLimitExceeded" in reasons or "userRateLimitExceeded" in reasons:
        retry_after = 0.0
        header = err.resp.get("retry-after") if hasattr(err.resp, "get") else None
        if header:
            try:
                retry_after = float(header)
            except ValueError:
                retry_after = 0.0
        return RateLimitError(retry_after=retry_after)
    if status == 403:
        if any(r in ("quotaExceeded", "dailyLimitExceeded") for r in reasons):
            return QuotaExceededError(resource)
        return PermissionDeniedError(resource, action)
    return GoogleAPIOperationError(f"{resource}: {err}")


# ── Token store ───────────────────────────────────────────────────────────────

class StoreError(GwsctlError):
    pass


class StoreCorrupt(StoreError):
    """The token store exists but cannot be decrypted or parsed."""


class TokenNotFound(StoreError):
    def __init__(self, email: str) -> None:
        self.email = email
        super().__init__(f"no token stored for {email}")


class KeyringPasswordRequired(StoreError):
    pass


# ── Accounts ──────────────────────────────────────────────────────────────────

class AccountNotFound(GwsctlError):
    def __init__(self, email: str) -> None:
        self.email = email
        super().__init__(f"account not found: {email}")


class NoAccountsConfigured(GwsctlError):
    def __init__(self) -> None:
        super().__init__("no accounts configured; run `gwsctl auth add` first")


# ── OAuth ─────────────────────────────────────────────────────────────────────

class OAuthError(GwsctlError):
    pass


class OAuthTimeout(OAuthError):
    pass


class OAuthExchangeError(OAuthError):
    """Token exchange with the identity provider failed; nothing was stored."""


# ── Gmail watch ───────────────────────────────────────────────────────────────

class NotWatchingError(GwsctlError):
    def __init__(self, email: str) -> None:
        self.email = email
        super().__init__(f"gmail watch is not active for {email}; run `gwsctl gmail watch start`")


class WatchConfigError(GwsctlError):
    pass


class WatchOperationError(GwsctlError):
    """A remote watch call failed; the message names the operation."""

    def __init__(self, operation: str, cause: BaseException) -> None:
        self.operation = operation
        super().__init__(f"gmail {operation}: {cause}")
