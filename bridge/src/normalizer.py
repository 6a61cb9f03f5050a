# UniFi Smart Power Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Pure-function transforms from raw controller device records to status models.

The controller's device records are undocumented and vary by firmware, so
every field is treated as optional. Entries the controller has not fully
materialized yet (no index, no override to pair with) are dropped instead of
being guessed at.

Relevant raw fields:
  outlet_table      -> index, name, relay_state, outlet_power
  outlet_overrides  -> index, name, relay_state (desired state)
  port_table        -> port_idx, name, port_poe, poe_mode, poe_caps,
                       poe_power, poe_enable, portconf_id
  port_overrides    -> port_idx, name, poe_mode, portconf_id, ...
"""

import logging
from typing import Any

from .unifi_model import (
    OUTLET_OVERRIDE_FIELDS,
    POE_MODE_AUTO,
    POE_MODE_OFF,
    POE_MODE_PASSTHROUGH,
    POE_MODE_PASV24,
    PORT_OVERRIDE_FIELDS,
    Device,
    DeviceStatus,
    InUse,
    Outlet,
    OutletState,
    PoeCaps,
    SwitchPort,
)

logger = logging.getLogger(__name__)


def _as_list(value: Any) -> list[dict[str, Any]]:
    """Return only the dict items of a raw table; anything else is empty."""
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def has_power_tables(raw: dict[str, Any]) -> bool:
    """True when a raw device carries an outlet table or a switch-port table."""
    return bool(_as_list(raw.get("outlet_table"))) or bool(_as_list(raw.get("port_table")))


def parse_in_use(power: Any) -> InUse:
    """Derive in-use from power telemetry; UNKNOWN when the controller omits it."""
    if power is None or power == "":
        return InUse.UNKNOWN
    try:
        watts = float(power)
    except (TypeError, ValueError):
        return InUse.UNKNOWN
    return InUse.YES if watts > 0 else InUse.NO


def poe_supports_mode(poe_caps: int | None, cap: int) -> bool:
    return bool(poe_caps) and (poe_caps & cap) == cap


def get_port_poe_on_mode(poe_caps: int | None) -> str:
    """Return the PoE mode a port takes when turned on.

    Priority ladder, first match wins:
      no caps (missing or 0)         -> auto
      802.3af / 802.3at              -> auto
      passthrough / passthroughable  -> passthrough
      24V passive                    -> pasv24
      anything else                  -> off
    """
    # Non-PoE ports are filtered before this; a PoE port without caps does auto
    if not poe_caps:
        return POE_MODE_AUTO
    if poe_supports_mode(poe_caps, PoeCaps.AF) or poe_supports_mode(poe_caps, PoeCaps.AT):
        return POE_MODE_AUTO
    if (poe_supports_mode(poe_caps, PoeCaps.PASSTHROUGH)
            or poe_supports_mode(poe_caps, PoeCaps.PASSTHROUGHABLE)):
        return POE_MODE_PASSTHROUGH
    if poe_supports_mode(poe_caps, PoeCaps.PASV24):
        return POE_MODE_PASV24
    return POE_MODE_OFF


def transform_device(raw: dict[str, Any], site: str | None = None) -> Device:
    """Build the Device identity from a raw record, filling in a display name."""
    model = str(raw.get("model") or "")
    serial = str(raw.get("serial") or "")
    name = str(raw.get("name") or "").strip() or model or serial
    return Device(
        id=str(raw.get("_id") or ""),
        mac=str(raw.get("mac") or ""),
        site=site,
        ip=str(raw.get("ip") or ""),
        model=model,
        version=str(raw.get("version") or ""),
        serial_number=serial,
        name=name,
    )


def transform_outlets(raw: dict[str, Any]) -> list[Outlet]:
    overrides: dict[int, dict[str, Any]] = {}
    for override in _as_list(raw.get("outlet_overrides")):
        idx = _as_int(override.get("index"))
        if idx is not None and idx not in overrides:
            overrides[idx] = override

    outlets = []
    for entry in _as_list(raw.get("outlet_table")):
        idx = _as_int(entry.get("index"))
        if idx is None:
            continue
        override = overrides.get(idx)
        if override is None:
            override = {k: entry[k] for k in OUTLET_OVERRIDE_FIELDS if k in entry}
        if not override:
            continue
        outlets.append(Outlet(
            index=idx,
            name=str(entry.get("name") or "").strip() or f"Outlet {idx}",
            relay_state=OutletState.ON if entry.get("relay_state") else OutletState.OFF,
            in_use=parse_in_use(entry.get("outlet_power")),
            entry=entry,
            override=override,
        ))
    return outlets


def transform_ports(raw: dict[str, Any]) -> list[SwitchPort]:
    overrides: dict[int, dict[str, Any]] = {}
    for override in _as_list(raw.get("port_overrides")):
        idx = _as_int(override.get("port_idx"))
        if idx is not None and idx not in overrides:
            overrides[idx] = override

    ports = []
    for entry in _as_list(raw.get("port_table")):
        if not entry.get("port_poe"):
            continue
        idx = _as_int(entry.get("port_idx"))
        if idx is None:
            continue
        on_action = get_port_poe_on_mode(_as_int(entry.get("poe_caps")))
        if on_action == POE_MODE_OFF:
            continue
        override = overrides.get(idx)
        if override is None:
            override = {k: entry[k] for k in PORT_OVERRIDE_FIELDS if k in entry}
        if not override:
            continue
        ports.append(SwitchPort(
            index=idx,
            name=str(entry.get("name") or "").strip() or f"Port {idx}",
            poe_mode=entry.get("poe_mode") or POE_MODE_OFF,
            poe_on_action=on_action,
            in_use=parse_in_use(entry.get("poe_power")),
            active=bool(entry.get("poe_enable")),
            entry=entry,
            override=override,
        ))
    return ports


def transform_device_status(raw: dict[str, Any], site: str | None = None) -> DeviceStatus:
    """Combine a raw controller device record into a DeviceStatus snapshot."""
    return DeviceStatus(
        device=transform_device(raw, site),
        outlets=transform_outlets(raw),
        ports=transform_ports(raw),
        port_overrides=_as_list(raw.get("port_overrides")),
    )
