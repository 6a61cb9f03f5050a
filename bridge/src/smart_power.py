# UniFi Smart Power Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Device-status synchronization engine for UniFi outlets and PoE ports.

UniFiSmartPower is the single point of contact with one controller:

- reads go through a TTL cache keyed per device and per site,
- every controller conversation (site listing, cache refills, commands) is
  serialized by one reentrant lock,
- subscriptions share one poll loop per (device, kind, index),
- commands rewrite the device's whole override list under the lock and then
  invalidate the cached snapshots they made stale.

Override rebuilds echo the last observed state of untouched outlets/ports.
That is only safe because nothing else writes through this engine while the
lock is held; widening the lock's scope would break it.
"""

import logging
import time
from typing import Any, Callable

from .errors import NotFoundError
from .gateway import ControllerGateway
from .normalizer import has_power_tables, transform_device_status
from .status_cache import StatusCache, clamp_seconds, device_cache_key
from .status_lock import ReentrantLock
from .subscriptions import StatusHandler, StatusSubscriptions
from .unifi_model import (
    POE_MODE_ACTIONS,
    Device,
    DeviceKind,
    DeviceStatus,
    Outlet,
    OutletAction,
    OutletState,
    Site,
    SwitchPort,
)

logger = logging.getLogger(__name__)


def build_outlet_overrides(outlets: list[Outlet], outlet_index: int,
                           desired_on: bool) -> list[dict[str, Any]]:
    """Full outlet override list with one outlet's relay state rewritten.

    Untouched outlets carry their last observed relay state, not the state
    stored in their override.
    """
    return [
        {
            **outlet.override,
            "relay_state": desired_on if outlet.index == outlet_index
            else outlet.relay_state == OutletState.ON,
        }
        for outlet in outlets
    ]


def build_port_overrides(status: DeviceStatus, port_index: int,
                         poe_mode: str) -> list[dict[str, Any]]:
    """Full port override list with one port's PoE mode rewritten.

    Starts from every override the controller holds so that ports which are
    not exposed keep theirs, then merges in every exposed port.
    """
    overrides = [dict(o) for o in status.port_overrides]
    positions: dict[int, int] = {}
    for pos, override in enumerate(overrides):
        try:
            positions.setdefault(int(override.get("port_idx")), pos)
        except (TypeError, ValueError):
            continue

    for port in status.ports:
        merged = {
            **port.override,
            "poe_mode": poe_mode if port.index == port_index else port.poe_mode,
        }
        if port.index in positions:
            overrides[positions[port.index]] = merged
        else:
            overrides.append(merged)
    return overrides


class UniFiSmartPower:
    STATUS_CACHE_TTL_S_DEFAULT = 15
    STATUS_CACHE_TTL_S_MIN = 5
    STATUS_CACHE_TTL_S_MAX = 60

    STATUS_POLL_INTERVAL_S_DEFAULT = 15
    STATUS_POLL_INTERVAL_S_MIN = 5
    STATUS_POLL_INTERVAL_S_MAX = 60

    DEVICE_STATUS_LOCK = "OUTLET_STATUS"

    def __init__(
        self,
        gateway: ControllerGateway,
        *,
        status_poll_interval: float | None = None,
        status_cache_ttl: float | None = None,
        default_site: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.gateway = gateway
        self.default_site = default_site or "default"
        self.status_cache_ttl = clamp_seconds(
            status_cache_ttl, self.STATUS_CACHE_TTL_S_DEFAULT,
            self.STATUS_CACHE_TTL_S_MIN, self.STATUS_CACHE_TTL_S_MAX,
        )
        self.status_poll_interval = clamp_seconds(
            status_poll_interval, self.STATUS_POLL_INTERVAL_S_DEFAULT,
            self.STATUS_POLL_INTERVAL_S_MIN, self.STATUS_POLL_INTERVAL_S_MAX,
        )
        self._lock = ReentrantLock(self.DEVICE_STATUS_LOCK)
        self._cache = StatusCache(clock=clock)
        self._subscriptions = StatusSubscriptions(self._poll_status, self.status_poll_interval)

        # Command health tracking
        self._total_commands = 0
        self._failed_commands = 0
        self._last_command_error: str | None = None

    # -- Subscriptions ----------------------------------------------------

    def reset(self) -> None:
        """Clear every status subscription (used before rediscovery)."""
        self._subscriptions.reset()

    def subscribe(self, device: Device, kind: DeviceKind, index: int,
                  handler: StatusHandler) -> str:
        return self._subscriptions.subscribe(device, kind, index, handler)

    def unsubscribe(self, token: str) -> None:
        self._subscriptions.unsubscribe(token)

    @property
    def subscriptions(self) -> StatusSubscriptions:
        return self._subscriptions

    async def _poll_status(self, device: Device, kind: DeviceKind,
                           index: int) -> Outlet | SwitchPort:
        if kind == DeviceKind.OUTLET:
            return await self.get_outlet_status(device, index)
        if kind == DeviceKind.PORT:
            return await self.get_port_status(device, index)
        raise ValueError(f"unknown device status kind={kind}")

    # -- Reads ------------------------------------------------------------

    def _site(self, site: str | None, device: Device | None = None) -> str:
        if device is not None and device.site:
            return device.site
        return site or self.default_site

    async def get_sites(self) -> list[Site]:
        async with self._lock:
            logger.debug("[API] Fetching sites from UniFi API")
            await self.gateway.login()
            raw_sites = await self.gateway.list_sites()
        sites = []
        for raw in raw_sites:
            site_id = raw.get("name") or raw.get("_id")
            if not site_id:
                continue
            sites.append(Site(id=str(site_id), name=str(raw.get("desc") or site_id)))
        return sites

    async def get_device_statuses(self, site: str | None = None,
                                  device: Device | None = None) -> list[DeviceStatus]:
        """Status of every power device in a site, or of one device.

        Warm cache entries are served without the lock; a miss refills under it.
        """
        scope = self._site(site, device)
        key = device_cache_key(scope, device.id if device else None)

        cached = self._cache.get(key)
        if cached is not None:
            return cached

        async def fetch() -> list[DeviceStatus]:
            logger.debug("[API] Fetching status from UniFi API [%s]", key)
            await self.gateway.login()
            raw_devices = await self.gateway.list_devices(
                scope, device.mac if device else None,
            )
            return [
                transform_device_status(raw, scope)
                for raw in raw_devices
                if isinstance(raw, dict) and has_power_tables(raw)
            ]

        async with self._lock:
            return await self._cache.wrap(key, fetch, self.status_cache_ttl)

    async def get_device_status(self, device: Device) -> DeviceStatus:
        statuses = await self.get_device_statuses(device=device)
        if len(statuses) != 1:
            raise NotFoundError(f"unknown device with id={device.id}")
        return statuses[0]

    async def get_outlet_status(self, device: Device, outlet_index: int) -> Outlet:
        status = await self.get_device_status(device)
        for outlet in status.outlets:
            if outlet.index == outlet_index:
                return outlet
        raise NotFoundError(f"unknown outlet with id={outlet_index}")

    async def get_port_status(self, device: Device, port_index: int) -> SwitchPort:
        status = await self.get_device_status(device)
        for port in status.ports:
            if port.index == port_index:
                return port
        raise NotFoundError(f"unknown port with id={port_index}")

    # -- Commands ---------------------------------------------------------

    async def command_outlet(self, device: Device, outlet_index: int,
                             command: OutletAction | bool) -> None:
        desired_on = bool(command)
        async with self._lock:
            status = await self.get_device_status(device)
            if not any(o.index == outlet_index for o in status.outlets):
                raise NotFoundError(f"unknown outlet with id={outlet_index}")
            patch = {
                "outlet_overrides": build_outlet_overrides(
                    status.outlets, outlet_index, desired_on,
                ),
            }
            await self._push(device, patch)
        logger.info(
            "[API] Command outlet %s.%s -> %s",
            device.mac, outlet_index, "ON" if desired_on else "OFF",
        )

    async def command_port(self, device: Device, port_index: int, poe_mode: str) -> None:
        if poe_mode not in POE_MODE_ACTIONS:
            raise ValueError(f"invalid PoE mode {poe_mode!r}")
        async with self._lock:
            status = await self.get_device_status(device)
            if not any(p.index == port_index for p in status.ports):
                raise NotFoundError(f"unknown port with id={port_index}")
            patch = {"port_overrides": build_port_overrides(status, port_index, poe_mode)}
            await self._push(device, patch)
        logger.info(
            "[API] Command port %s.%s -> %s", device.mac, port_index, poe_mode.upper(),
        )

    async def _push(self, device: Device, patch: dict[str, Any]) -> None:
        """Write a patch and invalidate the snapshots it made stale. Lock must be held."""
        self._total_commands += 1
        try:
            await self.gateway.login()
            await self.gateway.push_overrides(self._site(None, device), device.id, patch)
        except Exception as e:
            self._failed_commands += 1
            self._last_command_error = str(e)
            raise
        self._invalidate(device)

    def _invalidate(self, device: Device) -> None:
        site = self._site(None, device)
        self._cache.invalidate(device_cache_key(site, device.id))
        self._cache.invalidate(device_cache_key(site))

    # -- Lifecycle --------------------------------------------------------

    def get_health(self) -> dict:
        return {
            "gateway": self.gateway.get_health(),
            "cache": self._cache.get_health(),
            "subscriptions": self._subscriptions.get_health(),
            "total_commands": self._total_commands,
            "failed_commands": self._failed_commands,
            "last_command_error": self._last_command_error,
            "lock_held": self._lock.locked(),
        }

    async def close(self) -> None:
        await self._subscriptions.close()
        await self.gateway.close()

