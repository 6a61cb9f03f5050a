# UniFi Smart Power Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Unit tests for MQTT handler."""

import json
import os
import sys
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "bridge"))

from src.accessories import ControlSwitch, OutletAccessory, PortAccessory
from src.unifi_model import Device, InUse, Outlet, OutletState, SwitchPort

DEVICE = Device(id="dev1", mac="74:ac:b9:00:00:01", site="default", model="USPPDUP",
                version="6.5.62", serial_number="SER001", name="Rack PDU")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def make_config(**overrides):
    """Create a mock Config with default values."""
    config = MagicMock()
    config.mqtt_broker = overrides.get("mqtt_broker", "mosquitto")
    config.mqtt_port = overrides.get("mqtt_port", 1883)
    config.mqtt_username = overrides.get("mqtt_username", "")
    config.mqtt_password = overrides.get("mqtt_password", "")
    config.mqtt_topic_prefix = overrides.get("mqtt_topic_prefix", "unifi")
    return config


def make_mqtt_message(topic, payload):
    """Create a mock MQTTMessage."""
    msg = MagicMock()
    msg.topic = topic
    msg.payload = payload.encode("utf-8") if isinstance(payload, str) else payload
    return msg


def make_publish_info(rc=0):
    """Create a mock publish info result."""
    info = MagicMock()
    info.rc = rc
    return info


def make_handler(MockClient, **overrides):
    from src.mqtt_handler import MQTTHandler

    MockClient.return_value.publish.return_value = make_publish_info(0)
    return MQTTHandler(make_config(**overrides))


def published(MockClient) -> dict:
    """Map topic -> last payload published through the handler's client."""
    return {
        c.args[0]: c.args[1]
        for c in MockClient.return_value.publish.call_args_list
    }


def make_outlet_accessory(state=OutletState.ON, in_use=InUse.YES):
    acc = OutletAccessory(MagicMock(), DEVICE, Outlet(index=2, name="NAS", in_use=in_use))
    acc.state = state
    acc.in_use = in_use
    return acc


def make_port_accessory(mode="auto", in_use=InUse.NO):
    port = SwitchPort(index=5, name="Camera", poe_mode=mode, in_use=in_use)
    acc = PortAccessory(MagicMock(), DEVICE, port)
    acc.poe_mode = mode
    acc.in_use = in_use
    return acc


# ---------------------------------------------------------------------------
# Init / connect
# ---------------------------------------------------------------------------

@patch("paho.mqtt.client.Client")
class TestMQTTHandlerInit:
    """Tests for MQTTHandler.__init__."""

    def test_creates_client_with_prefix_id(self, MockClient):
        make_handler(MockClient, mqtt_topic_prefix="power")
        assert MockClient.call_args[1]["client_id"] == "unifi-smart-power-power"

    def test_sets_lwt_correctly(self, MockClient):
        make_handler(MockClient)
        MockClient.return_value.will_set.assert_called_once_with(
            "unifi/bridge/status", "offline", qos=1, retain=True
        )

    def test_sets_callbacks_and_backoff(self, MockClient):
        handler = make_handler(MockClient)
        client = MockClient.return_value
        assert client.on_connect == handler._on_connect
        assert client.on_message == handler._on_message
        assert client.on_disconnect == handler._on_disconnect
        client.reconnect_delay_set.assert_called_once_with(min_delay=1, max_delay=30)


@patch("paho.mqtt.client.Client")
class TestConnect:
    """Tests for connect and the on_connect callback."""

    def test_connect_with_credentials(self, MockClient):
        handler = make_handler(MockClient, mqtt_username="bridge", mqtt_password="pw",
                               mqtt_broker="10.0.0.1", mqtt_port=1884)
        with patch("asyncio.get_event_loop"):
            handler.connect()

        client = MockClient.return_value
        client.username_pw_set.assert_called_once_with("bridge", "pw")
        client.connect.assert_called_once_with("10.0.0.1", 1884, keepalive=60)
        client.loop_start.assert_called_once()

    def test_connect_failure_is_logged_not_raised(self, MockClient):
        handler = make_handler(MockClient)
        MockClient.return_value.connect.side_effect = ConnectionRefusedError("refused")
        with patch("asyncio.get_event_loop"):
            handler.connect()
        MockClient.return_value.loop_start.assert_not_called()

    def test_on_connect_publishes_online_and_subscribes(self, MockClient):
        handler = make_handler(MockClient)
        client = MagicMock()
        handler._on_connect(client, None, None, 0, None)

        client.publish.assert_called_once_with("unifi/bridge/status", "online", qos=1, retain=True)
        subscribed = [c.args[0] for c in client.subscribe.call_args_list]
        assert subscribed == [
            "unifi/+/outlet/+/command",
            "unifi/+/port/+/command",
            "unifi/bridge/control/set",
        ]
        assert handler.get_status()["connected"] is True

    def test_reconnect_drains_pending(self, MockClient):
        handler = make_handler(MockClient)
        MockClient.return_value.publish.return_value = make_publish_info(4)
        handler.publish_outlet(make_outlet_accessory())
        assert len(handler._pending_publishes) == 3

        client = MagicMock()
        handler._on_connect(client, None, None, 0, None)
        handler._on_disconnect(client, None, None, 7)
        handler._on_connect(client, None, None, 0, None)

        assert handler._pending_publishes == []
        status = handler.get_status()
        assert status["reconnect_count"] == 1
        assert status["publish_errors"] == 3


# ---------------------------------------------------------------------------
# Incoming messages
# ---------------------------------------------------------------------------

@patch("paho.mqtt.client.Client")
class TestOnMessage:
    """Tests for command and control-switch routing."""

    def test_routes_outlet_command(self, MockClient):
        handler = make_handler(MockClient)
        callback = MagicMock(return_value="coro")
        handler.set_command_callback(callback)
        handler._loop = MagicMock()

        with patch("asyncio.run_coroutine_threadsafe") as run:
            handler._on_message(None, None, make_mqtt_message("unifi/SER001/outlet/3/command", " ON "))

        callback.assert_called_once_with("SER001", "outlet", 3, "on")
        run.assert_called_once_with("coro", handler._loop)

    def test_routes_port_command(self, MockClient):
        handler = make_handler(MockClient)
        callback = MagicMock(return_value="coro")
        handler.set_command_callback(callback)
        handler._loop = MagicMock()

        with patch("asyncio.run_coroutine_threadsafe"):
            handler._on_message(None, None, make_mqtt_message("unifi/SER001/port/5/command", "off"))

        callback.assert_called_once_with("SER001", "port", 5, "off")

    @pytest.mark.parametrize("topic", [
        "other/SER001/outlet/3/command",
        "unifi/SER001/bank/3/command",
        "unifi/SER001/outlet/3/state",
        "unifi/SER001/outlet/x/command",
    ])
    def test_ignores_foreign_topics(self, MockClient, topic):
        handler = make_handler(MockClient)
        callback = MagicMock()
        handler.set_command_callback(callback)
        handler._loop = MagicMock()

        with patch("asyncio.run_coroutine_threadsafe") as run:
            handler._on_message(None, None, make_mqtt_message(topic, "on"))

        callback.assert_not_called()
        run.assert_not_called()

    def test_control_switch_dispatched_to_loop(self, MockClient):
        handler = make_handler(MockClient)
        callback = MagicMock()
        handler.set_control_callback(callback)
        handler._loop = MagicMock()

        handler._on_message(None, None, make_mqtt_message("unifi/bridge/control/set", "ON"))
        handler._on_message(None, None, make_mqtt_message("unifi/bridge/control/set", "maybe"))

        handler._loop.call_soon_threadsafe.assert_called_once_with(callback, True)


# ---------------------------------------------------------------------------
# Publishing
# ---------------------------------------------------------------------------

@patch("paho.mqtt.client.Client")
class TestPublish:
    """Tests for state, response and discovery publishing."""

    def test_publish_outlet_state(self, MockClient):
        handler = make_handler(MockClient)
        handler.publish_accessory(make_outlet_accessory())

        topics = published(MockClient)
        assert topics["unifi/SER001/outlet/2/state"] == "on"
        assert topics["unifi/SER001/outlet/2/in_use"] == "true"
        assert topics["unifi/SER001/outlet/2/name"] == "NAS"

    def test_unknown_outlet_state_not_published(self, MockClient):
        handler = make_handler(MockClient)
        handler.publish_outlet(make_outlet_accessory(OutletState.UNKNOWN, InUse.UNKNOWN))

        topics = published(MockClient)
        assert "unifi/SER001/outlet/2/state" not in topics
        assert "unifi/SER001/outlet/2/in_use" not in topics

    def test_device_without_serial_uses_mac(self, MockClient):
        handler = make_handler(MockClient)
        device = Device(id="dev9", mac="74:ac:b9:00:00:09", name="Plug")
        acc = OutletAccessory(MagicMock(), device, Outlet(index=1, name="Outlet 1"))
        acc.state = OutletState.OFF
        handler.publish_outlet(acc)
        handler.publish_ha_discovery(acc)

        topics = published(MockClient)
        assert topics["unifi/74acb9000009/outlet/1/state"] == "off"
        assert not any("//" in t for t in topics)
        assert "homeassistant/switch/unifi_74acb9000009_outlet_1/config" in topics

    def test_publish_port_state(self, MockClient):
        handler = make_handler(MockClient)
        handler.publish_accessory(make_port_accessory("off"))

        topics = published(MockClient)
        assert topics["unifi/SER001/port/5/state"] == "off"
        assert topics["unifi/SER001/port/5/poe_mode"] == "off"
        assert topics["unifi/SER001/port/5/in_use"] == "false"

    def test_publish_command_response(self, MockClient):
        handler = make_handler(MockClient)
        handler.publish_command_response("SER001", "outlet", 2, "on", False, "refused")

        payload = json.loads(published(MockClient)["unifi/SER001/outlet/2/command/response"])
        assert payload["success"] is False
        assert payload["command"] == "on"
        assert payload["outlet"] == 2
        assert payload["error"] == "refused"

    def test_publish_control(self, MockClient):
        handler = make_handler(MockClient)
        switch = ControlSwitch("Control")
        handler.publish_control(switch)
        assert published(MockClient)["unifi/bridge/control/state"] == "off"

    def test_ha_discovery_outlet_sent_once(self, MockClient):
        handler = make_handler(MockClient)
        acc = make_outlet_accessory()
        handler.publish_ha_discovery(acc)
        handler.publish_ha_discovery(acc)

        topics = published(MockClient)
        config = json.loads(topics["homeassistant/switch/unifi_SER001_outlet_2/config"])
        assert config["command_topic"] == "unifi/SER001/outlet/2/command"
        assert config["state_topic"] == "unifi/SER001/outlet/2/state"
        assert config["availability"]["topic"] == "unifi/bridge/status"
        assert config["device"]["identifiers"] == ["unifi_SER001"]
        assert config["device"]["sw_version"] == "6.5.62"
        assert "homeassistant/binary_sensor/unifi_SER001_outlet_2_in_use/config" in topics
        assert MockClient.return_value.publish.call_count == 2

    def test_ha_discovery_port_without_in_use(self, MockClient):
        handler = make_handler(MockClient)
        handler.publish_ha_discovery(make_port_accessory(in_use=InUse.UNKNOWN))

        topics = published(MockClient)
        config = json.loads(topics["homeassistant/switch/unifi_SER001_port_5/config"])
        assert config["icon"] == "mdi:ethernet"
        assert not any("binary_sensor" in t for t in topics)

    def test_disconnect_publishes_offline(self, MockClient):
        handler = make_handler(MockClient)
        handler.disconnect()

        client = MockClient.return_value
        client.publish.assert_called_with("unifi/bridge/status", "offline", qos=1, retain=True)
        client.loop_stop.assert_called_once()
        client.disconnect.assert_called_once()
