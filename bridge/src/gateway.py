# UniFi Smart Power Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Abstract gateway protocol for UniFi controller communication.

Defines the ControllerGateway interface that the HTTP client and the mock
controller both implement. This keeps UniFiSmartPower gateway-agnostic: it
only ever logs in, lists sites, lists devices, and pushes override lists.
"""

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class ControllerGateway(Protocol):
    """Protocol for UniFi controller gateways.

    Implementations: UniFiClient, MockController.
    """

    async def login(self) -> None:
        """Authenticate with the controller.

        Raises AuthError on bad credentials, TransportError otherwise.
        """
        ...

    async def list_sites(self) -> list[dict[str, Any]]:
        """Return raw site records (``name`` is the site id, ``desc`` its label)."""
        ...

    async def list_devices(self, site: str, mac: str | None = None) -> list[dict[str, Any]]:
        """Return raw device records for a site, optionally only one MAC."""
        ...

    async def push_overrides(self, site: str, device_id: str,
                             patch: dict[str, Any]) -> None:
        """Replace a device's override lists.

        *patch* holds ``outlet_overrides`` and/or ``port_overrides``; each list
        replaces the controller's list wholesale. Raises WriteRejected when the
        controller refuses it.
        """
        ...

    def get_health(self) -> dict:
        """Return gateway health metrics."""
        ...

    async def close(self) -> None:
        """Release the gateway's connection resources."""
        ...
