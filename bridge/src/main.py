# UniFi Smart Power Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Entry point -- UniFi SmartPower -> MQTT bridge.

Architecture
------------
BridgeManager    -- owns the status engine, MQTT handler and control switch;
                    rediscovers sites/devices periodically and wires one
                    accessory per exposed outlet or PoE port.
UniFiSmartPower  -- status engine: cached reads, shared poll loops,
                    serialized override writes.
"""

__version__ = "1.0.0"

import asyncio
import logging
import signal
import sys

from .accessories import (
    CommandFailed,
    ControlDisabled,
    ControlSwitch,
    OutletAccessory,
    PortAccessory,
)
from .config import Config, ConfigError
from .errors import ControllerError
from .gateway import ControllerGateway
from .mock_controller import MockController
from .mqtt_handler import MQTTHandler
from .smart_power import UniFiSmartPower
from .unifi_client import UniFiClient
from .unifi_model import DeviceStatus, Site

logger = logging.getLogger("unifi_bridge")


def is_included(value: str, include: list[str], exclude: list[str]) -> bool:
    """Apply an include/exclude filter pair; exclusion wins, empty include allows all."""
    if value in exclude:
        return False
    if include and value not in include:
        return False
    return True


def create_gateway(config: Config) -> ControllerGateway:
    if config.mock_mode:
        logger.info("Mock mode: using simulated UniFi controller")
        return MockController()
    return UniFiClient(
        config.unifi_host,
        config.unifi_port,
        config.unifi_username,
        config.unifi_password,
        verify_ssl=config.unifi_verify_ssl,
        timeout=config.unifi_timeout,
    )


class BridgeManager:
    """Discovers outlets and ports and keeps MQTT in sync with them."""

    def __init__(self, config: Config | None = None,
                 engine: UniFiSmartPower | None = None,
                 mqtt: MQTTHandler | None = None):
        self.config = config or Config()
        self.engine = engine or UniFiSmartPower(
            create_gateway(self.config),
            status_poll_interval=self.config.status_poll_interval,
            status_cache_ttl=self.config.status_cache_ttl,
            default_site=self.config.unifi_site or "default",
        )
        self.mqtt = mqtt or MQTTHandler(self.config)

        # (serial, kind, index) -> accessory
        self.accessories: dict[tuple[str, str, int], OutletAccessory | PortAccessory] = {}
        self.control: ControlSwitch | None = None
        if self.config.control_switch and (self.config.guard_outlets or self.config.guard_ports):
            self.control = ControlSwitch(
                self.config.control_switch_name,
                timeout=self.config.control_switch_timeout,
                on_change=self.mqtt.publish_control,
            )

        self._initialized = False
        self._running = False
        self._refresh_task: asyncio.Task | None = None
        self._discovery_errors = 0

    def _outlet_guard(self):
        if self.control is not None and self.config.guard_outlets:
            return self.control.is_disabled
        return lambda: False

    def _port_guard(self):
        if self.control is not None and self.config.guard_ports:
            return self.control.is_disabled
        return lambda: False

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def discover_devices(self):
        """Rebuild every accessory from the controller's current sites and devices."""
        self.engine.reset()
        self.accessories.clear()
        level = logging.DEBUG if self._initialized else logging.INFO

        if self.control is not None:
            self.mqtt.publish_control_discovery(self.control)
            self.mqtt.publish_control(self.control)

        try:
            sites = await self.engine.get_sites()
            if self.config.log_api_responses:
                logger.info("SITES: %s", sites)
        except ControllerError as e:
            logger.error(
                "Failed to get sites from UniFi; verify host, port, username, "
                "and password are correct: %s", e,
            )
            return
        if not sites:
            sites = [Site(id=self.engine.default_site, name=self.engine.default_site)]

        for site in sites:
            if not is_included(site.id, self.config.include_sites, self.config.exclude_sites):
                continue
            logger.log(level, "Site [%s]: %s", site.id, site.name)
            try:
                statuses = await self.engine.get_device_statuses(site.id)
                if self.config.log_api_responses:
                    logger.info("SITE: %s DEVICES: %s", site.id, statuses)
            except ControllerError as e:
                logger.error(
                    "Failed to get status from UniFi; verify host, port, username, "
                    "and password are correct: %s", e,
                )
                return

            for status in statuses:
                self._add_device(status, level)

        for acc in self.accessories.values():
            self.mqtt.publish_ha_discovery(acc)
            acc.start()
        logger.log(level, "Discovered %d accessories", len(self.accessories))

    def _add_device(self, status: DeviceStatus, level: int):
        device = status.device
        key = device.key
        if not is_included(key, self.config.include_devices, self.config.exclude_devices):
            return

        messages = [f"Device [{key}]: {device.name}"]
        for outlet in status.outlets:
            acc_id = f"{key}.{outlet.index}"
            if not is_included(acc_id, self.config.include_outlets, self.config.exclude_outlets):
                continue
            # Single-outlet devices (plugs) are named after the device
            name = device.name if len(status.outlets) == 1 else outlet.name
            acc = OutletAccessory(
                self.engine, device, outlet, name,
                is_disabled=self._outlet_guard(),
                on_change=self.mqtt.publish_accessory,
            )
            self.accessories[(key, "outlet", outlet.index)] = acc
            messages.append(f"Outlet [{acc_id}]: {device.name} > {name}")

        for port in status.ports:
            if not port.active and not self.config.include_inactive_ports:
                continue
            acc_id = f"{key}.{port.index}"
            if not is_included(acc_id, self.config.include_ports, self.config.exclude_ports):
                continue
            name = f"{device.name} {port.name}" if len(status.ports) == 1 else port.name
            acc = PortAccessory(
                self.engine, device, port, name,
                is_disabled=self._port_guard(),
                on_change=self.mqtt.publish_accessory,
            )
            self.accessories[(key, "port", port.index)] = acc
            messages.append(f"Port [{acc_id}]: {device.name} > {name}")

        if len(messages) > 1:
            for message in messages:
                logger.log(level, message)

    async def _refresh_loop(self):
        """Rediscover devices on a fixed interval."""
        while self._running:
            try:
                await self.discover_devices()
                self._initialized = True
                self._discovery_errors = 0
            except Exception:
                self._discovery_errors += 1
                if self._discovery_errors <= 5 or self._discovery_errors % 30 == 0:
                    logger.exception("Device discovery failed (%d)", self._discovery_errors)
            await asyncio.sleep(self.config.refresh_devices_interval)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def _handle_command(self, serial: str, kind: str, index: int, command: str):
        acc = self.accessories.get((serial, kind, index))
        if acc is None:
            logger.warning("Command for unknown %s %s.%d", kind, serial, index)
            self.mqtt.publish_command_response(
                serial, kind, index, command, False, f"unknown {kind} {serial}.{index}",
            )
            return
        if command not in ("on", "off"):
            logger.warning("Unknown command %r for %s %s.%d", command, kind, serial, index)
            self.mqtt.publish_command_response(
                serial, kind, index, command, False, f"unknown command {command!r}",
            )
            return

        try:
            await acc.set_on(command == "on")
        except (ControlDisabled, CommandFailed) as e:
            self.mqtt.publish_command_response(serial, kind, index, command, False, str(e))
            return
        self.mqtt.publish_command_response(serial, kind, index, command, True)

    def _handle_control(self, enabled: bool):
        if self.control is None:
            logger.warning("Control switch message received but no control switch is configured")
            return
        self.control.set_on(enabled)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def get_status(self) -> dict:
        return {
            "version": __version__,
            "initialized": self._initialized,
            "accessories": len(self.accessories),
            "control_enabled": self.control.enabled if self.control else None,
            "engine": self.engine.get_health(),
            "mqtt": self.mqtt.get_status(),
        }

    async def run(self):
        """Connect MQTT and keep devices discovered until stopped."""
        self._running = True
        self.mqtt.set_command_callback(self._handle_command)
        self.mqtt.set_control_callback(self._handle_control)
        self.mqtt.connect()

        self._refresh_task = asyncio.get_event_loop().create_task(
            self._refresh_loop(), name="refresh-devices",
        )
        try:
            await self._refresh_task
        except asyncio.CancelledError:
            pass
        finally:
            # Poll loops and the HTTP session
            await self.engine.close()

    def stop(self):
        if not self._running:
            return
        self._running = False

        if self._refresh_task and not self._refresh_task.done():
            self._refresh_task.cancel()
        if self.control is not None:
            self.control.close()

        self.mqtt.disconnect()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main():
    try:
        config = Config()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    manager = BridgeManager(config)

    def _shutdown(sig, frame):
        logger.info("Received signal %s, shutting down...", sig)
        manager.stop()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    try:
        loop.run_until_complete(manager.run())
    except KeyboardInterrupt:
        pass
    finally:
        manager.stop()
        loop.close()
        logger.info("Bridge stopped.")


if __name__ == "__main__":
    main()
