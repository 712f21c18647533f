"""Shared HTTP plumbing for vendor connectors.

Every outbound call goes through :func:`request_json`, which turns transport
failures and non-2xx responses into the connector fault taxonomy.  Token
refresh for OAuth2 vendors goes through :func:`refresh_oauth2`.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any

import httpx

from src.wearables.base import OAuthTokens
from src.wearables.errors import (
    AuthExpired,
    ConsentRevoked,
    PermanentError,
    classify_exception,
    classify_http_status,
)

logger = logging.getLogger("nutrisync.wearables.connectors.http")

DEFAULT_TIMEOUT_SECONDS = 30.0


async def request_json(
    method: str,
    url: str,
    *,
    access_token: str | None = None,
    params: dict[str, Any] | None = None,
    data: dict[str, Any] | None = None,
    json_body: Any = None,
    headers: dict[str, str] | None = None,
    http_client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> Any:
    """Make a vendor API call and return the decoded JSON body.

    Args:
        method:       HTTP method.
        url:          Full endpoint URL.
        access_token: Bearer token, if the call is authenticated.
        params:       Query parameters.
        data:         Form body.
        json_body:    JSON body.
        headers:      Extra headers.
        http_client:  Optional pre-configured client (for testing).
        timeout:      Per-request timeout when no client is injected.

    Raises:
        AuthExpired, RateLimited, TransientError, PermanentError.
    """
    request_headers = dict(headers or {})
    if access_token:
        request_headers["Authorization"] = f"Bearer {access_token}"

    try:
        if http_client:
            response = await http_client.request(
                method, url, params=params, data=data, json=json_body, headers=request_headers
            )
        else:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.request(
                    method, url, params=params, data=data, json=json_body, headers=request_headers
                )
    except httpx.HTTPError as exc:
        raise classify_exception(exc) from exc

    fault = classify_http_status(response.status_code, response.headers, response.text)
    if fault is not None:
        logger.info("%s %s → %s", method, url, fault)
        raise fault

    if response.status_code == 204 or not response.content:
        return {}
    try:
        return response.json()
    except ValueError as exc:
        raise PermanentError(f"{url} returned non-JSON body") from exc


async def refresh_oauth2(
    token_url: str,
    tokens: OAuthTokens,
    client_id: str,
    client_secret: str,
    now: datetime,
    http_client: httpx.AsyncClient | None = None,
) -> OAuthTokens:
    """Run the standard OAuth2 refresh-token grant.

    A rejected grant (400/401/403 from the token endpoint) means the user
    revoked consent or the refresh token expired.

    Raises:
        ConsentRevoked: If there is no refresh token or the grant is rejected.
        RateLimited, TransientError: On throttling or network failure.
    """
    if not tokens.refresh_token:
        raise ConsentRevoked("no refresh token on file")

    try:
        data = await request_json(
            "POST",
            token_url,
            data={
                "grant_type": "refresh_token",
                "refresh_token": tokens.refresh_token,
                "client_id": client_id,
                "client_secret": client_secret,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            http_client=http_client,
        )
    except ConsentRevoked:
        raise
    except (AuthExpired, PermanentError) as exc:
        raise ConsentRevoked(f"refresh grant rejected: {exc}") from exc

    if "access_token" not in data:
        raise PermanentError("token endpoint response has no access_token")

    expires_in = data.get("expires_in", 3600)
    return OAuthTokens(
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token", tokens.refresh_token),
        expires_at=now + timedelta(seconds=int(expires_in)),
        token_type=data.get("token_type", "Bearer"),
        scopes=data["scope"].split() if data.get("scope") else list(tokens.scopes),
    )


# ---------------------------------------------------------------------------
# Cursor encoding
# ---------------------------------------------------------------------------


def encode_cursor(state: dict[str, Any]) -> str:
    """Serialize structured cursor state to an opaque string."""
    return json.dumps(state, sort_keys=True, separators=(",", ":"))


def decode_cursor(cursor: str | None) -> dict[str, Any]:
    """Inverse of :func:`encode_cursor`.  A missing or corrupt cursor is a first sync."""
    if not cursor:
        return {}
    try:
        state = json.loads(cursor)
    except ValueError:
        logger.warning("Discarding unreadable cursor: %r", cursor[:80])
        return {}
    return state if isinstance(state, dict) else {}
