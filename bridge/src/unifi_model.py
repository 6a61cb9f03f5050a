# UniFi Smart Power Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Constants and data models for UniFi SmartPower outlets and PoE switch ports."""

import enum
from dataclasses import dataclass, field
from typing import Any


class OutletState(enum.IntEnum):
    UNKNOWN = -1
    OFF = 0
    ON = 1


class InUse(enum.IntEnum):
    UNKNOWN = -1
    NO = 0
    YES = 1


class OutletAction(enum.IntEnum):
    OFF = 0
    ON = 1


class DeviceKind(enum.IntEnum):
    OUTLET = 0
    PORT = 1


class PoeCaps(enum.IntFlag):
    """PoE capability bits reported in ``poe_caps`` of a port table entry."""
    AF = 1                  # 802.3af
    AT = 2                  # 802.3at
    PASV24 = 4
    PASSTHROUGHABLE = 8
    PASSTHROUGH = 16
    BT = 32                 # 802.3bt


# Observed PoE modes; "unknown" only before the first status arrives
POE_MODE_UNKNOWN = "unknown"
POE_MODE_AUTO = "auto"
POE_MODE_PASSTHROUGH = "passthrough"
POE_MODE_PASV24 = "pasv24"
POE_MODE_OFF = "off"

POE_MODES = (
    POE_MODE_UNKNOWN, POE_MODE_AUTO, POE_MODE_PASSTHROUGH, POE_MODE_PASV24, POE_MODE_OFF,
)

# Modes a port command may request
POE_MODE_ACTIONS = (POE_MODE_AUTO, POE_MODE_PASSTHROUGH, POE_MODE_PASV24, POE_MODE_OFF)

# Override record fields synthesized from a live entry when the controller
# has no override yet
OUTLET_OVERRIDE_FIELDS = ("index", "name", "relay_state")
PORT_OVERRIDE_FIELDS = ("port_idx", "name", "poe_mode", "portconf_id")

KIND_NAMES = {
    DeviceKind.OUTLET: "outlet",
    DeviceKind.PORT: "port",
}


@dataclass(frozen=True)
class Site:
    id: str             # controller short name, e.g. "default"
    name: str = ""


@dataclass(frozen=True)
class Device:
    id: str
    mac: str
    site: str | None = None
    ip: str = ""
    model: str = ""
    version: str = ""
    serial_number: str = ""
    name: str = ""

    @property
    def key(self) -> str:
        """Identifier used in topics and filters: serial, else MAC digits, else id."""
        return self.serial_number or self.mac.replace(":", "").lower() or self.id


@dataclass
class Outlet:
    index: int
    name: str = ""
    relay_state: OutletState = OutletState.UNKNOWN
    in_use: InUse = InUse.UNKNOWN
    entry: dict[str, Any] = field(default_factory=dict)
    override: dict[str, Any] = field(default_factory=dict)


@dataclass
class SwitchPort:
    index: int
    name: str = ""
    poe_mode: str = POE_MODE_UNKNOWN
    poe_on_action: str = POE_MODE_AUTO
    in_use: InUse = InUse.UNKNOWN
    active: bool = False
    entry: dict[str, Any] = field(default_factory=dict)
    override: dict[str, Any] = field(default_factory=dict)


@dataclass
class DeviceStatus:
    device: Device
    outlets: list[Outlet] = field(default_factory=list)
    ports: list[SwitchPort] = field(default_factory=list)
    # Every port override the controller holds, including ports that are not
    # exposed (non-PoE or no usable "on" mode)
    port_overrides: list[dict[str, Any]] = field(default_factory=list)
