"""Error taxonomy for the wearable sync engine.

Connector faults are classified into exactly four kinds, and that
classification alone drives the orchestrator's retry behaviour:

    AuthExpired     — token rejected; one forced refresh, then disconnect
    RateLimited     — vendor throttling; next attempt no earlier than retry_after
    TransientError  — network / 5xx; retried within the job
    PermanentError  — 4xx or malformed data; per-record, never retried
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Mapping

import httpx

logger = logging.getLogger("nutrisync.wearables.errors")

DEFAULT_RETRY_AFTER_SECONDS = 60.0


class WearableSyncError(Exception):
    """Base class for every error raised by the sync engine."""


# ---------------------------------------------------------------------------
# Connector faults
# ---------------------------------------------------------------------------


class ConnectorError(WearableSyncError):
    """A classified fault from a device connector."""


class AuthExpired(ConnectorError):
    """The vendor rejected the access token."""


class ConsentRevoked(AuthExpired):
    """The refresh grant is gone; the user must re-authenticate."""


class RateLimited(ConnectorError):
    """The vendor throttled the request."""

    def __init__(self, retry_after_seconds: float = DEFAULT_RETRY_AFTER_SECONDS, message: str = "") -> None:
        self.retry_after_seconds = max(float(retry_after_seconds), 0.0)
        super().__init__(message or f"rate limited, retry after {self.retry_after_seconds:.0f}s")


class TransientError(ConnectorError):
    """Network failure, timeout or 5xx.  Safe to retry."""


class PermanentError(ConnectorError):
    """4xx (other than auth) or malformed data.  Never retried."""


# ---------------------------------------------------------------------------
# Engine faults
# ---------------------------------------------------------------------------


class ConflictUnresolved(WearableSyncError):
    """No policy could be applied to a conflict.  Fails the affected records only."""

    def __init__(self, metric_type: str, message: str = "") -> None:
        self.metric_type = metric_type
        super().__init__(message or f"no conflict policy configured for metric '{metric_type}'")


class LockContention(WearableSyncError):
    """Another sync for the same device is already in flight."""


class DeviceNotFound(WearableSyncError):
    """No device with the given id exists."""


class ConnectorNotRegistered(WearableSyncError):
    """No connector implementation is registered for a device type."""


# ---------------------------------------------------------------------------
# HTTP classification
# ---------------------------------------------------------------------------


def parse_retry_after(value: str | None, now: datetime | None = None) -> float:
    """Parse a ``Retry-After`` header (delta-seconds or HTTP-date).

    Args:
        value: Raw header value.
        now:   Reference time for HTTP-date values.

    Returns:
        Seconds to wait; DEFAULT_RETRY_AFTER_SECONDS if missing or unparseable.
    """
    if not value:
        return DEFAULT_RETRY_AFTER_SECONDS
    value = value.strip()
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.warning("Unparseable Retry-After header: %r", value)
        return DEFAULT_RETRY_AFTER_SECONDS
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    reference = now or datetime.now(timezone.utc)
    return max((when - reference).total_seconds(), 0.0)


def classify_http_status(
    status_code: int,
    headers: Mapping[str, str] | None = None,
    body: Any = None,
) -> ConnectorError | None:
    """Map a vendor HTTP status to the connector fault taxonomy.

    Returns None for 2xx/3xx responses.
    """
    headers = headers or {}
    detail = f"HTTP {status_code}"
    if body:
        detail = f"{detail}: {str(body)[:200]}"

    if status_code < 400:
        return None
    if status_code in (401, 403):
        return AuthExpired(detail)
    if status_code == 429:
        return RateLimited(parse_retry_after(headers.get("Retry-After")), detail)
    if status_code == 408 or status_code >= 500:
        return TransientError(detail)
    return PermanentError(detail)


def classify_exception(exc: BaseException) -> ConnectorError:
    """Classify an arbitrary exception raised while talking to a vendor."""
    if isinstance(exc, ConnectorError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        classified = classify_http_status(
            exc.response.status_code, exc.response.headers, exc.response.text
        )
        return classified or PermanentError(str(exc))
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError, TimeoutError)):
        return TransientError(f"{type(exc).__name__}: {exc}")
    if isinstance(exc, (ValueError, KeyError, TypeError)):
        return PermanentError(f"malformed response: {exc}")
    return TransientError(f"unexpected {type(exc).__name__}: {exc}")
