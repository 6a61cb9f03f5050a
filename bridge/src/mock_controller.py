# UniFi Smart Power Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Simulated UniFi controller for testing without real hardware.

Serves raw device records in the same shape the controller API returns,
so the whole normalizer / cache / command path runs unchanged. Override
writes are applied back to the live tables the way the controller would
after the device reprovisions.
"""

import copy
import logging
import random
import time
from typing import Any

from .errors import AuthError, TransportError, WriteRejected
from .unifi_model import POE_MODE_OFF, PoeCaps

logger = logging.getLogger(__name__)

OUTLET_WATTS = 18.5
PORT_WATTS = 4.2


def _mac(n: int) -> str:
    return f"74:ac:b9:00:00:{n:02x}"


def mock_pdu(n: int, num_outlets: int = 8, name: str = "") -> dict[str, Any]:
    """Raw record of a SmartPower PDU Pro with every outlet on."""
    outlets = [
        {"index": i, "name": f"Outlet {i}", "relay_state": True,
         "outlet_power": f"{OUTLET_WATTS:.2f}"}
        for i in range(1, num_outlets + 1)
    ]
    return {
        "_id": f"mock-pdu-{n}",
        "mac": _mac(n),
        "ip": f"192.168.1.{100 + n}",
        "model": "USPPDUP",
        "version": "6.5.62",
        "serial": f"MOCKPDU{n:04d}",
        "name": name or f"Mock PDU {n}",
        "outlet_table": outlets,
        "outlet_overrides": [
            {"index": o["index"], "name": o["name"], "relay_state": True} for o in outlets
        ],
    }


def mock_plug(n: int, name: str = "") -> dict[str, Any]:
    """Raw record of a single-outlet SmartPower plug."""
    return {
        "_id": f"mock-plug-{n}",
        "mac": _mac(n),
        "ip": f"192.168.1.{100 + n}",
        "model": "UP1",
        "version": "6.5.62",
        "serial": f"MOCKPLUG{n:04d}",
        "name": name or f"Mock Plug {n}",
        "outlet_table": [
            {"index": 1, "name": "Outlet 1", "relay_state": False, "outlet_power": "0"},
        ],
        "outlet_overrides": [],
    }


def mock_switch(n: int, num_ports: int = 8, name: str = "") -> dict[str, Any]:
    """Raw record of a PoE switch; the last port is an uplink without PoE."""
    ports = []
    for i in range(1, num_ports + 1):
        poe = i < num_ports
        ports.append({
            "port_idx": i,
            "name": f"Port {i}",
            "port_poe": poe,
            "poe_caps": int(PoeCaps.AF | PoeCaps.AT) if poe else 0,
            "poe_mode": "auto" if poe else None,
            "poe_enable": poe,
            "poe_power": f"{PORT_WATTS:.2f}" if poe else None,
            "portconf_id": "mock-portconf-all",
        })
    return {
        "_id": f"mock-switch-{n}",
        "mac": _mac(n),
        "ip": f"192.168.1.{100 + n}",
        "model": "USL8LP",
        "version": "6.5.59",
        "serial": f"MOCKSW{n:04d}",
        "name": name or f"Mock Switch {n}",
        "port_table": ports,
        "port_overrides": [
            {"port_idx": num_ports, "name": "Uplink", "portconf_id": "mock-portconf-all"},
        ],
    }


def mock_access_point(n: int) -> dict[str, Any]:
    """Raw record of a device with no power tables."""
    return {
        "_id": f"mock-ap-{n}",
        "mac": _mac(n),
        "model": "U6LR",
        "serial": f"MOCKAP{n:04d}",
        "name": f"Mock AP {n}",
    }


class MockController:
    """Simulates a UniFi controller with one or more sites.

    Implements the ControllerGateway protocol. Failure switches let tests and
    the mock mode exercise the error paths of the bridge.
    """

    def __init__(self, sites: dict[str, list[dict[str, Any]]] | None = None,
                 site_names: dict[str, str] | None = None):
        if sites is None:
            sites = {"default": [mock_pdu(1), mock_plug(2), mock_switch(3), mock_access_point(4)]}
        self._devices: dict[str, list[dict[str, Any]]] = copy.deepcopy(sites)
        self._site_names = site_names or {}
        self.fail_login = False
        self.fail_reads = False
        self.fail_writes = False
        self.reject_writes = False

        self.logins = 0
        self.list_sites_calls = 0
        self.list_devices_calls = 0
        self.push_calls = 0
        self.last_patch: dict[str, Any] | None = None
        self._last_success_time: float | None = None

    def devices(self, site: str = "default") -> list[dict[str, Any]]:
        return self._devices.get(site, [])

    def find_device(self, device_id: str) -> dict[str, Any] | None:
        for devices in self._devices.values():
            for raw in devices:
                if raw.get("_id") == device_id:
                    return raw
        return None

    def set_outlet_power(self, device_id: str, index: int, watts: float | None):
        """Change the power telemetry reported for one outlet."""
        raw = self.find_device(device_id)
        for entry in (raw or {}).get("outlet_table", []):
            if entry.get("index") == index:
                entry["outlet_power"] = None if watts is None else f"{watts:.2f}"

    # -- ControllerGateway ------------------------------------------------

    async def login(self) -> None:
        if self.fail_login:
            raise AuthError("Mock: invalid credentials")
        self.logins += 1

    async def list_sites(self) -> list[dict[str, Any]]:
        self.list_sites_calls += 1
        if self.fail_reads:
            raise TransportError("Mock: controller unreachable")
        return [
            {"_id": f"mock-site-{i}", "name": site, "desc": self._site_names.get(site, site)}
            for i, site in enumerate(self._devices, start=1)
        ]

    async def list_devices(self, site: str, mac: str | None = None) -> list[dict[str, Any]]:
        self.list_devices_calls += 1
        if self.fail_reads:
            raise TransportError("Mock: controller unreachable")
        devices = self._devices.get(site, [])
        if mac:
            devices = [d for d in devices if str(d.get("mac", "")).lower() == mac.lower()]
        self._last_success_time = time.time()
        return copy.deepcopy(devices)

    async def push_overrides(self, site: str, device_id: str,
                             patch: dict[str, Any]) -> None:
        self.push_calls += 1
        self.last_patch = copy.deepcopy(patch)
        if self.fail_writes:
            raise TransportError("Mock: controller unreachable")
        if self.reject_writes:
            raise WriteRejected(device_id, "api.err.InvalidPayload")

        raw = next((d for d in self._devices.get(site, []) if d.get("_id") == device_id), None)
        if raw is None:
            raise WriteRejected(device_id, "api.err.UnknownDevice")

        if "outlet_overrides" in patch:
            raw["outlet_overrides"] = copy.deepcopy(patch["outlet_overrides"])
            self._apply_outlets(raw)
        if "port_overrides" in patch:
            raw["port_overrides"] = copy.deepcopy(patch["port_overrides"])
            self._apply_ports(raw)
        self._last_success_time = time.time()

    @staticmethod
    def _apply_outlets(raw: dict[str, Any]):
        desired = {o.get("index"): bool(o.get("relay_state")) for o in raw["outlet_overrides"]}
        for entry in raw.get("outlet_table", []):
            idx = entry.get("index")
            if idx not in desired or bool(entry.get("relay_state")) == desired[idx]:
                continue
            entry["relay_state"] = desired[idx]
            watts = OUTLET_WATTS + random.uniform(-0.5, 0.5) if desired[idx] else 0.0
            entry["outlet_power"] = f"{watts:.2f}"
            logger.info("Mock: %s outlet %s -> %s", raw.get("name"), idx,
                        "ON" if desired[idx] else "OFF")

    @staticmethod
    def _apply_ports(raw: dict[str, Any]):
        desired = {
            o.get("port_idx"): o["poe_mode"]
            for o in raw["port_overrides"] if o.get("poe_mode")
        }
        for entry in raw.get("port_table", []):
            idx = entry.get("port_idx")
            if idx not in desired or not entry.get("port_poe"):
                continue
            mode = desired[idx]
            if entry.get("poe_mode") == mode:
                continue
            entry["poe_mode"] = mode
            entry["poe_enable"] = mode != POE_MODE_OFF
            entry["poe_power"] = f"{PORT_WATTS:.2f}" if mode != POE_MODE_OFF else "0.00"
            logger.info("Mock: %s port %s -> %s", raw.get("name"), idx, mode)

    def get_health(self) -> dict:
        return {
            "target": "mock",
            "logins": self.logins,
            "total_requests": self.list_sites_calls + self.list_devices_calls + self.push_calls,
            "total_writes": self.push_calls,
            "last_success": self._last_success_time,
            "reachable": not self.fail_reads,
        }

    async def close(self) -> None:
        """Mock close, no-op."""
        pass
