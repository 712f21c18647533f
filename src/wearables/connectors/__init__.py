"""Device connectors for the wearable sync engine.

Each connector implements the DeviceConnector contract and handles:
- Capability negotiation (which metric types it supplies, whether it can push)
- Incremental, cursor-based pulls from the vendor API
- OAuth2 token refresh
- Normalizing vendor records into HealthObservation

Available connectors:
    GoogleFitConnector — Google Fit REST API (phone health platform)
    FitbitConnector    — Fitbit Web API (fitness band, weight write-back)
    GarminConnector    — Garmin Health API (smartwatch)
    WhoopConnector     — Whoop API v1 (wrist tracker)
"""

from __future__ import annotations

import logging
from typing import Any

from src.wearables.base import DeviceConnector, DeviceType
from src.wearables.connectors.fitbit import FitbitConnector
from src.wearables.connectors.garmin import GarminConnector
from src.wearables.connectors.google_fit import GoogleFitConnector
from src.wearables.connectors.whoop import WhoopConnector
from src.wearables.errors import ConnectorNotRegistered

logger = logging.getLogger("nutrisync.wearables.connectors")

__all__ = [
    "ConnectorRegistry",
    "FitbitConnector",
    "GarminConnector",
    "GoogleFitConnector",
    "WhoopConnector",
    "CONNECTOR_REGISTRY",
    "build_default_registry",
    "get_connector_class",
    "register_connector",
]

# Registry: device type → connector class
CONNECTOR_REGISTRY: dict[DeviceType, type[DeviceConnector]] = {
    DeviceType.GOOGLE_FIT: GoogleFitConnector,
    DeviceType.FITBIT: FitbitConnector,
    DeviceType.GARMIN: GarminConnector,
    DeviceType.WHOOP: WhoopConnector,
}


def register_connector(connector_cls: type[DeviceConnector]) -> type[DeviceConnector]:
    """Register (or replace) the connector class for its ``DEVICE_TYPE``.

    Usable as a class decorator.
    """
    CONNECTOR_REGISTRY[connector_cls.DEVICE_TYPE] = connector_cls
    logger.info("Registered connector %s for %s", connector_cls.__name__, connector_cls.DEVICE_TYPE.value)
    return connector_cls


def get_connector_class(device_type: DeviceType | str) -> type[DeviceConnector]:
    """Return the connector class for a device type.

    Raises:
        ConnectorNotRegistered: If nothing is registered for the type.
    """
    try:
        return CONNECTOR_REGISTRY[DeviceType(device_type)]
    except (KeyError, ValueError):
        raise ConnectorNotRegistered(
            f"No connector registered for device type '{device_type}'. "
            f"Available: {[t.value for t in CONNECTOR_REGISTRY]}"
        ) from None


class ConnectorRegistry:
    """Connector instances keyed by device type, as used by the orchestrator.

    Usage::

        registry = build_default_registry(http_client=client)
        connector = registry.get(device.device_type)
    """

    def __init__(self, connectors: list[DeviceConnector] | None = None) -> None:
        self._connectors: dict[DeviceType, DeviceConnector] = {}
        for connector in connectors or []:
            self.register(connector)

    def register(self, connector: DeviceConnector) -> None:
        self._connectors[connector.DEVICE_TYPE] = connector

    def get(self, device_type: DeviceType) -> DeviceConnector:
        connector = self._connectors.get(device_type)
        if connector is None:
            raise ConnectorNotRegistered(f"No connector instance for device type '{device_type.value}'")
        return connector

    def __contains__(self, device_type: object) -> bool:
        return device_type in self._connectors

    @property
    def device_types(self) -> list[DeviceType]:
        return sorted(self._connectors, key=lambda t: t.value)


def build_default_registry(**connector_kwargs: Any) -> ConnectorRegistry:
    """Instantiate every registered connector class with the same keyword arguments."""
    return ConnectorRegistry([cls(**connector_kwargs) for cls in CONNECTOR_REGISTRY.values()])
