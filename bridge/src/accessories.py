# UniFi Smart Power Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Per-outlet and per-port accessories plus the control switch guard.

Each accessory subscribes to its entity on the status engine and keeps the
last value it saw. Poll results that repeat the last value, or that are still
UNKNOWN, are dropped; real changes are handed to the ``on_change`` listener
(the MQTT publisher in the running bridge).
"""

import asyncio
import logging
from typing import Callable

from .smart_power import UniFiSmartPower
from .unifi_model import (
    POE_MODE_OFF,
    POE_MODE_UNKNOWN,
    Device,
    DeviceKind,
    InUse,
    Outlet,
    OutletAction,
    OutletState,
    SwitchPort,
)

logger = logging.getLogger(__name__)


class CommandFailed(Exception):
    """A command reached the engine and failed."""


class ControlDisabled(Exception):
    """A command was refused because the control switch is off."""


def _never_disabled() -> bool:
    return False


class ControlSwitch:
    """Guard that must be switched on before guarded commands are accepted.

    With a timeout, the switch turns itself back off that many seconds after
    it was switched on.
    """

    def __init__(self, name: str, timeout: float = 0,
                 on_change: Callable[["ControlSwitch"], None] | None = None):
        self.name = name
        self.timeout = timeout
        self.on_change = on_change
        self._enabled = False
        self._timer: asyncio.TimerHandle | None = None

    @property
    def enabled(self) -> bool:
        return self._enabled

    def is_enabled(self) -> bool:
        return self._enabled

    def is_disabled(self) -> bool:
        return not self._enabled

    def set_on(self, value: bool) -> None:
        logger.debug("[%s] Set control switch -> %s", self.name, value)
        self._enabled = bool(value)
        self._cancel_timer()
        if self._enabled and self.timeout > 0:
            self._timer = asyncio.get_running_loop().call_later(self.timeout, self._expire)
        self._notify()

    def _expire(self):
        self._timer = None
        if not self._enabled:
            return
        self._enabled = False
        logger.info("[%s] Control switch disabled after %ss timeout", self.name, self.timeout)
        self._notify()

    def _cancel_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _notify(self):
        if self.on_change is not None:
            self.on_change(self)

    def close(self) -> None:
        self._cancel_timer()


class _PowerAccessory:
    kind: DeviceKind

    def __init__(self, engine: UniFiSmartPower, device: Device, index: int, name: str,
                 *, is_disabled: Callable[[], bool] = _never_disabled,
                 on_change: Callable[["_PowerAccessory"], None] | None = None,
                 has_in_use: bool = True):
        self.engine = engine
        self.device = device
        self.index = index
        self.name = name
        self.is_disabled = is_disabled
        self.on_change = on_change
        self.has_in_use = has_in_use
        self.id = f"{device.key}.{index}"
        self.in_use = InUse.UNKNOWN
        self._token: str | None = None

    @property
    def subscribed(self) -> bool:
        return self._token is not None

    def start(self) -> None:
        if self._token is None:
            self._token = self.engine.subscribe(self.device, self.kind, self.index,
                                                self._on_status)

    def stop(self) -> None:
        if self._token is not None:
            self.engine.unsubscribe(self._token)
            self._token = None

    def _update_in_use(self, in_use: InUse) -> bool:
        if not self.has_in_use or in_use == InUse.UNKNOWN or in_use == self.in_use:
            return False
        logger.debug("[%s] Received %s subscription InUse update: %s -> %s",
                     self.name, self.kind.name.lower(), self.in_use.name, in_use.name)
        self.in_use = in_use
        return True

    def _notify(self):
        if self.on_change is not None:
            self.on_change(self)

    def _check_enabled(self):
        if self.is_disabled():
            logger.info("[%s] Cannot set %s state while control is disabled",
                        self.name, self.kind.name.lower())
            raise ControlDisabled(f"{self.name}: control is disabled")


class OutletAccessory(_PowerAccessory):
    kind = DeviceKind.OUTLET

    def __init__(self, engine: UniFiSmartPower, device: Device, outlet: Outlet,
                 name: str | None = None, **kwargs):
        kwargs.setdefault("has_in_use", outlet.in_use != InUse.UNKNOWN)
        super().__init__(engine, device, outlet.index, name or outlet.name, **kwargs)
        self.state = OutletState.UNKNOWN

    @property
    def is_on(self) -> bool | None:
        if self.state == OutletState.UNKNOWN:
            return None
        return self.state == OutletState.ON

    def _on_status(self, outlet: Outlet) -> None:
        changed = False
        if outlet.relay_state != OutletState.UNKNOWN and outlet.relay_state != self.state:
            logger.debug("[%s] Received outlet subscription status update: %s -> %s",
                         self.name, self.state.name, outlet.relay_state.name)
            self.state = outlet.relay_state
            changed = True
        if self._update_in_use(outlet.in_use):
            changed = True
        if changed:
            self._notify()

    async def set_on(self, value: bool) -> None:
        self._check_enabled()
        logger.debug("[%s] Set outlet on -> %s", self.name, value)
        try:
            await self.engine.command_outlet(
                self.device, self.index, OutletAction.ON if value else OutletAction.OFF,
            )
        except Exception as e:
            logger.error("[%s] An error occurred setting outlet state; %s", self.name, e)
            raise CommandFailed(str(e)) from e


class PortAccessory(_PowerAccessory):
    kind = DeviceKind.PORT

    def __init__(self, engine: UniFiSmartPower, device: Device, port: SwitchPort,
                 name: str | None = None, **kwargs):
        kwargs.setdefault("has_in_use", port.in_use != InUse.UNKNOWN)
        super().__init__(engine, device, port.index, name or port.name, **kwargs)
        self.poe_on_action = port.poe_on_action
        self.poe_mode = POE_MODE_UNKNOWN

    @property
    def is_on(self) -> bool | None:
        if self.poe_mode == POE_MODE_UNKNOWN:
            return None
        return self.poe_mode != POE_MODE_OFF

    def _on_status(self, port: SwitchPort) -> None:
        changed = False
        if port.poe_mode != POE_MODE_UNKNOWN and port.poe_mode != self.poe_mode:
            logger.debug("[%s] Received port subscription status update: %s -> %s",
                         self.name, self.poe_mode.upper(), port.poe_mode.upper())
            self.poe_mode = port.poe_mode
            changed = True
        if self._update_in_use(port.in_use):
            changed = True
        if changed:
            self._notify()

    async def set_on(self, value: bool) -> None:
        self._check_enabled()
        logger.debug("[%s] Set port on -> %s", self.name, value)
        try:
            await self.engine.command_port(
                self.device, self.index, self.poe_on_action if value else POE_MODE_OFF,
            )
        except Exception as e:
            logger.error("[%s] An error occurred setting port state; %s", self.name, e)
            raise CommandFailed(str(e)) from e


PowerAccessory = OutletAccessory | PortAccessory
