"""Credential store: hands connectors a currently valid access token.

Tokens are persisted only as Fernet ciphertext (``DeviceAuth``).  Refresh is
serialized per device, so concurrent callers for the same device share one
vendor refresh call.  A revoked grant moves the device to ``disconnected``.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable

from src.services.encryption import TokenEncryptor
from src.wearables.base import (
    ConnectionState,
    DeviceAuth,
    OAuthTokens,
    WearableDevice,
    utc_now,
)
from src.wearables.config_loader import get_sync_config
from src.wearables.connectors import ConnectorRegistry
from src.wearables.errors import AuthExpired, ConsentRevoked, TransientError
from src.wearables.sync.locks import KeyedLocks
from src.wearables.sync.repository import SyncRepository

logger = logging.getLogger("nutrisync.wearables.sync.credentials")


class CredentialStore:
    """Per-device OAuth token custody.

    Usage::

        store = CredentialStore(repository, encryptor, registry)
        await store.store_tokens(device, tokens)
        tokens = await store.get_valid_credential(device)
    """

    def __init__(
        self,
        repository: SyncRepository,
        encryptor: TokenEncryptor,
        connectors: ConnectorRegistry,
        refresh_margin_seconds: float | None = None,
        refresh_timeout_seconds: float | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the store.

        Args:
            repository:              Where DeviceAuth ciphertext lives.
            encryptor:               Seals and opens token material.
            connectors:              Supplies each device type's refresh flow.
            refresh_margin_seconds:  Refresh tokens expiring within this margin
                                     (sync_config credentials.refresh_margin_seconds).
            refresh_timeout_seconds: Bound on one vendor refresh call
                                     (sync_config orchestrator.connector_timeout_seconds).
            clock:                   Returns the current UTC time.
        """
        config = get_sync_config() if refresh_margin_seconds is None or refresh_timeout_seconds is None else None
        self._repository = repository
        self._encryptor = encryptor
        self._connectors = connectors
        self._margin = timedelta(
            seconds=refresh_margin_seconds if refresh_margin_seconds is not None else config.refresh_margin_seconds
        )
        self._timeout = (
            refresh_timeout_seconds
            if refresh_timeout_seconds is not None
            else config.orchestrator.connector_timeout_seconds
        )
        self._clock = clock
        self._locks = KeyedLocks()
        self.refresh_count = 0

    async def store_tokens(self, device_id: str, tokens: OAuthTokens, refreshed: bool = False) -> None:
        """Encrypt and persist tokens for a device."""
        await self._repository.save_auth(
            DeviceAuth(
                device_id=device_id,
                ciphertext=self._encryptor.encrypt(tokens),
                expires_at=tokens.expires_at,
                last_refreshed_at=self._clock() if refreshed else None,
            )
        )

    async def get_valid_credential(self, device: WearableDevice) -> OAuthTokens:
        """Return tokens that will stay valid for at least the refresh margin.

        Raises:
            AuthExpired:    If no credential is stored for the device.
            ConsentRevoked: If the vendor rejected the refresh grant.
            RateLimited, TransientError: If the refresh call itself failed.
        """
        async with self._locks.hold(device.device_id):
            tokens = await self._load(device.device_id)
            if not self._expiring(tokens):
                return tokens
            return await self._refresh(device, tokens)

    async def force_refresh(self, device: WearableDevice, rejected_access_token: str) -> OAuthTokens:
        """Refresh after the vendor rejected ``rejected_access_token``.

        If another caller already rotated the token while this one waited
        for the lock, the rotated token is returned without a second refresh.
        """
        async with self._locks.hold(device.device_id):
            tokens = await self._load(device.device_id)
            if tokens.access_token != rejected_access_token and not self._expiring(tokens):
                return tokens
            return await self._refresh(device, tokens)

    # ------------------------------------------------------------------
    # Internals (caller holds the device lock)
    # ------------------------------------------------------------------

    async def _load(self, device_id: str) -> OAuthTokens:
        auth = await self._repository.get_auth(device_id)
        if auth is None or not auth.ciphertext:
            raise AuthExpired(f"no credential stored for device {device_id}")
        return self._encryptor.decrypt(auth.ciphertext)

    def _expiring(self, tokens: OAuthTokens) -> bool:
        if tokens.expires_at is None:
            return False
        return tokens.expires_at - self._clock() <= self._margin

    async def _refresh(self, device: WearableDevice, tokens: OAuthTokens) -> OAuthTokens:
        connector = self._connectors.get(device.device_type)
        self.refresh_count += 1
        try:
            fresh = await asyncio.wait_for(connector.refresh_token(device, tokens), timeout=self._timeout)
        except ConsentRevoked as exc:
            logger.warning("Consent revoked for device %s: %s", device.device_id, exc)
            await self._mark_disconnected(device, str(exc))
            raise
        except asyncio.TimeoutError as exc:
            raise TransientError(f"token refresh timed out after {self._timeout:.0f}s") from exc

        await self.store_tokens(device.device_id, fresh, refreshed=True)
        logger.info("Refreshed token for device %s (expires %s)", device.device_id, fresh.expires_at)
        return fresh

    async def _mark_disconnected(self, device: WearableDevice, reason: str) -> None:
        current = await self._repository.get_device(device.device_id) or device
        current.state = ConnectionState.DISCONNECTED
        current.last_error = f"re-authentication required: {reason}"
        await self._repository.update_device(current)
        device.state = current.state
        device.last_error = current.last_error
