# UniFi Smart Power Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""MQTT pub/sub handler: publishes outlet/port state, routes commands, HA discovery.

Topic layout under the configurable prefix (default ``unifi``)::

    {prefix}/{serial}/outlet/{n}/state|in_use|name
    {prefix}/{serial}/port/{n}/state|poe_mode|in_use|name
    {prefix}/{serial}/{outlet|port}/{n}/command            (on / off)
    {prefix}/{serial}/{outlet|port}/{n}/command/response
    {prefix}/bridge/control/state|set
    {prefix}/bridge/status                                 (LWT)

Commands arrive on paho's network thread and are handed to the asyncio loop
with ``run_coroutine_threadsafe``.
"""

import asyncio
import json
import logging
import time
from typing import Awaitable, Callable

import paho.mqtt.client as mqtt

from .accessories import ControlSwitch, OutletAccessory, PortAccessory
from .config import Config
from .unifi_model import InUse

logger = logging.getLogger(__name__)

# (serial, kind, index, command) where kind is "outlet" or "port"
CommandCallback = Callable[[str, str, int, str], Awaitable[None]]
ControlCallback = Callable[[bool], None]

KINDS = ("outlet", "port")


class MQTTHandler:
    def __init__(self, config: Config):
        self.config = config
        self.prefix = config.mqtt_topic_prefix
        self._command_callback: CommandCallback | None = None
        self._control_callback: ControlCallback | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

        # Connection status tracking
        self._connected: bool = False
        self._reconnect_count: int = 0
        self._last_connect_time: float | None = None
        self._last_disconnect_time: float | None = None
        self._publish_errors: int = 0
        self._total_publishes: int = 0
        self._commands_received: int = 0
        # HA discovery tracking, by unique id
        self._ha_discovery_sent: set[str] = set()

        # Pending publishes queued while disconnected (max 100)
        self._pending_publishes: list[tuple[str, str, bool, int]] = []
        self._max_pending = 100

        self.client = mqtt.Client(
            client_id=f"unifi-smart-power-{self.prefix}",
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        )
        self.client.will_set(self.status_topic, "offline", qos=1, retain=True)
        self.client.on_connect = self._on_connect
        self.client.on_message = self._on_message
        self.client.on_disconnect = self._on_disconnect
        # Auto-reconnect with backoff
        self.client.reconnect_delay_set(min_delay=1, max_delay=30)

    @property
    def status_topic(self) -> str:
        return f"{self.prefix}/bridge/status"

    @property
    def control_state_topic(self) -> str:
        return f"{self.prefix}/bridge/control/state"

    @property
    def control_set_topic(self) -> str:
        return f"{self.prefix}/bridge/control/set"

    def entity_topic(self, serial: str, kind: str, index: int) -> str:
        return f"{self.prefix}/{serial}/{kind}/{index}"

    def set_command_callback(self, callback: CommandCallback):
        """Set the callback invoked as *callback(serial, kind, index, command)*."""
        self._command_callback = callback

    def set_control_callback(self, callback: ControlCallback):
        self._control_callback = callback

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def connect(self):
        logger.info("Connecting to MQTT broker %s:%d", self.config.mqtt_broker, self.config.mqtt_port)
        self._loop = asyncio.get_event_loop()

        # MQTT authentication
        if self.config.mqtt_username:
            self.client.username_pw_set(
                self.config.mqtt_username, self.config.mqtt_password
            )
            logger.info("MQTT authentication configured for user %s", self.config.mqtt_username)

        try:
            self.client.connect(self.config.mqtt_broker, self.config.mqtt_port, keepalive=60)
            self.client.loop_start()
        except Exception:
            logger.exception("Failed to connect to MQTT broker")

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        logger.info("MQTT connected (rc=%s)", reason_code)
        if self._last_connect_time is not None:
            self._reconnect_count += 1
            logger.info("MQTT reconnected (count=%d)", self._reconnect_count)
        self._connected = True
        self._last_connect_time = time.time()

        client.publish(self.status_topic, "online", qos=1, retain=True)

        # Subscribe to command topics for every device using wildcards
        for kind in KINDS:
            topic = f"{self.prefix}/+/{kind}/+/command"
            client.subscribe(topic, qos=1)
            logger.info("Subscribed to %s", topic)
        client.subscribe(self.control_set_topic, qos=1)

        # Drain pending publishes queued during disconnect
        if self._pending_publishes:
            drained = len(self._pending_publishes)
            for topic, payload, retain, qos in self._pending_publishes:
                try:
                    client.publish(topic, payload, qos=qos, retain=retain)
                except Exception:
                    logger.debug("Dropped pending publish to %s", topic, exc_info=True)
            self._pending_publishes.clear()
            logger.info("Drained %d pending publishes after reconnect", drained)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        logger.warning("MQTT disconnected (rc=%s)", reason_code)
        self._connected = False
        self._last_disconnect_time = time.time()

    def get_status(self) -> dict:
        """Return MQTT connection health info."""
        return {
            "connected": self._connected,
            "reconnect_count": self._reconnect_count,
            "last_connect": self._last_connect_time,
            "last_disconnect": self._last_disconnect_time,
            "broker": self.config.mqtt_broker,
            "port": self.config.mqtt_port,
            "publish_errors": self._publish_errors,
            "total_publishes": self._total_publishes,
            "commands_received": self._commands_received,
            "ha_discovery_sent": len(self._ha_discovery_sent),
        }

    def _publish(self, topic: str, payload, retain: bool = False, qos: int = 0):
        """Publish with error tracking. Queues retained messages on failure."""
        self._total_publishes += 1

        try:
            info = self.client.publish(topic, payload, qos=qos, retain=retain)
            if info.rc != mqtt.MQTT_ERR_SUCCESS:
                self._publish_errors += 1
                if self._publish_errors % 100 == 1:
                    logger.warning("MQTT publish failed (rc=%s, topic=%s)", info.rc, topic)
                if retain and len(self._pending_publishes) < self._max_pending:
                    self._pending_publishes.append((topic, str(payload), retain, qos))
        except Exception:
            self._publish_errors += 1
            if self._publish_errors % 100 == 1:
                logger.exception("MQTT publish exception (topic=%s)", topic)
            if retain and len(self._pending_publishes) < self._max_pending:
                self._pending_publishes.append((topic, str(payload), retain, qos))

    # ------------------------------------------------------------------
    # Incoming message routing
    # ------------------------------------------------------------------

    def _on_message(self, client, userdata, msg: mqtt.MQTTMessage):
        """Handle incoming command and control-switch messages."""
        try:
            payload = msg.payload.decode("utf-8").strip().lower()
            if msg.topic == self.control_set_topic:
                self._dispatch_control(payload)
                return

            # Parse topic: {prefix}/{serial}/{kind}/{n}/command
            parts = msg.topic.split("/")
            if (len(parts) == 5 and parts[0] == self.prefix
                    and parts[2] in KINDS and parts[4] == "command"):
                serial = parts[1]
                kind = parts[2]
                index = int(parts[3])
                self._commands_received += 1
                logger.info("Command received: device=%s %s=%d -> %s", serial, kind, index, payload)

                if not self._loop or not self._command_callback:
                    logger.warning("No command callback registered; dropping command")
                    return
                asyncio.run_coroutine_threadsafe(
                    self._command_callback(serial, kind, index, payload), self._loop
                )
        except Exception:
            logger.exception("Error handling MQTT message on %s", msg.topic)

    def _dispatch_control(self, payload: str):
        if payload not in ("on", "off"):
            logger.warning("Ignoring control switch payload %r", payload)
            return
        if not self._loop or not self._control_callback:
            logger.warning("No control callback registered; ignoring control switch")
            return
        self._loop.call_soon_threadsafe(self._control_callback, payload == "on")

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def publish_outlet(self, acc: OutletAccessory):
        """Publish the last observed state of an outlet (retained)."""
        base = self.entity_topic(acc.device.key, "outlet", acc.index)
        if acc.is_on is not None:
            self._publish(f"{base}/state", "on" if acc.is_on else "off", retain=True)
        if acc.in_use != InUse.UNKNOWN:
            self._publish(f"{base}/in_use", _bool(acc.in_use == InUse.YES), retain=True)
        self._publish(f"{base}/name", acc.name, retain=True)

    def publish_port(self, acc: PortAccessory):
        """Publish the last observed state of a PoE port (retained)."""
        base = self.entity_topic(acc.device.key, "port", acc.index)
        if acc.is_on is not None:
            self._publish(f"{base}/state", "on" if acc.is_on else "off", retain=True)
            self._publish(f"{base}/poe_mode", acc.poe_mode, retain=True)
        if acc.in_use != InUse.UNKNOWN:
            self._publish(f"{base}/in_use", _bool(acc.in_use == InUse.YES), retain=True)
        self._publish(f"{base}/name", acc.name, retain=True)

    def publish_accessory(self, acc: OutletAccessory | PortAccessory):
        if isinstance(acc, PortAccessory):
            self.publish_port(acc)
        else:
            self.publish_outlet(acc)

    def publish_control(self, switch: ControlSwitch):
        self._publish(self.control_state_topic, "on" if switch.enabled else "off", retain=True)

    def publish_command_response(
        self, serial: str, kind: str, index: int, command: str,
        success: bool, error: str | None = None,
    ):
        """Publish a command response."""
        resp = {
            "success": success,
            "command": command,
            kind: index,
            "error": error,
            "ts": time.time(),
        }
        self._publish(
            f"{self.entity_topic(serial, kind, index)}/command/response",
            json.dumps(resp),
            qos=1,
        )

    # --- Home Assistant MQTT Discovery ---

    def _device_info(self, acc: OutletAccessory | PortAccessory) -> dict:
        device = acc.device
        info = {
            "identifiers": [f"unifi_{device.key}"],
            "name": device.name,
            "manufacturer": "Ubiquiti",
            "model": device.model,
        }
        if device.version:
            info["sw_version"] = device.version
        if device.mac:
            info["connections"] = [["mac", device.mac]]
        return info

    def publish_ha_discovery(self, acc: OutletAccessory | PortAccessory):
        """Publish Home Assistant switch (and in-use sensor) configs for one entity."""
        kind = "port" if isinstance(acc, PortAccessory) else "outlet"
        serial = acc.device.key
        uid = f"unifi_{serial}_{kind}_{acc.index}"
        if uid in self._ha_discovery_sent:
            return

        base = self.entity_topic(serial, kind, acc.index)
        device_info = self._device_info(acc)
        avail = {
            "topic": self.status_topic,
            "payload_available": "online",
            "payload_not_available": "offline",
        }
        config = {
            "name": acc.name,
            "unique_id": uid,
            "device": device_info,
            "availability": avail,
            "state_topic": f"{base}/state",
            "command_topic": f"{base}/command",
            "payload_on": "on",
            "payload_off": "off",
            "state_on": "on",
            "state_off": "off",
            "icon": "mdi:ethernet" if kind == "port" else "mdi:power-socket-us",
        }
        self._publish(f"homeassistant/switch/{uid}/config", json.dumps(config), retain=True)

        if acc.has_in_use:
            sensor_uid = f"{uid}_in_use"
            config = {
                "name": f"{acc.name} In Use",
                "unique_id": sensor_uid,
                "device": device_info,
                "availability": avail,
                "state_topic": f"{base}/in_use",
                "payload_on": "true",
                "payload_off": "false",
                "device_class": "power",
            }
            self._publish(
                f"homeassistant/binary_sensor/{sensor_uid}/config",
                json.dumps(config),
                retain=True,
            )

        self._ha_discovery_sent.add(uid)
        logger.debug("Published HA MQTT Discovery config for %s", uid)

    def publish_control_discovery(self, switch: ControlSwitch):
        uid = f"unifi_{self.prefix}_control"
        if uid in self._ha_discovery_sent:
            return
        config = {
            "name": switch.name,
            "unique_id": uid,
            "device": {
                "identifiers": [f"unifi_bridge_{self.prefix}"],
                "name": "UniFi Smart Power Bridge",
                "manufacturer": "Valpatel Software",
                "model": "Control Switch",
            },
            "state_topic": self.control_state_topic,
            "command_topic": self.control_set_topic,
            "payload_on": "on",
            "payload_off": "off",
            "state_on": "on",
            "state_off": "off",
            "icon": "mdi:shield-lock",
        }
        self._publish(f"homeassistant/switch/{uid}/config", json.dumps(config), retain=True)
        self._ha_discovery_sent.add(uid)

    # ------------------------------------------------------------------
    # Disconnect
    # ------------------------------------------------------------------

    def disconnect(self):
        """Publish offline status and disconnect."""
        self._publish(self.status_topic, "offline", qos=1, retain=True)
        try:
            self.client.loop_stop()
            self.client.disconnect()
        except Exception:
            logger.debug("Error during MQTT disconnect", exc_info=True)


def _bool(value: bool) -> str:
    return "true" if value else "false"
