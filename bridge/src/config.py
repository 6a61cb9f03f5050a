# UniFi Smart Power Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Configuration from environment variables with validation.

Malformed values raise ConfigError. Interval-type settings are clamped into
their allowed range instead, matching how the status engine treats them.
"""

import logging
import os

logger = logging.getLogger(__name__)

TRUE_VALUES = ("true", "1", "yes")


class ConfigError(Exception):
    """Raised when configuration is invalid."""


class Config:
    def __init__(self):
        # Controller
        self.unifi_host = os.environ.get("UNIFI_HOST", "unifi").strip()
        self.unifi_port = self._int("UNIFI_PORT", "8443", 1, 65535)
        self.unifi_username = os.environ.get("UNIFI_USERNAME", "")
        self.unifi_password = os.environ.get("UNIFI_PASSWORD", "")
        self.unifi_site = os.environ.get("UNIFI_SITE", "").strip()
        self.unifi_verify_ssl = self._bool("UNIFI_VERIFY_SSL", "false")
        self.unifi_timeout = self._float("UNIFI_TIMEOUT", "10", 1, 120)

        # Status engine
        self.status_poll_interval = self._clamped("BRIDGE_STATUS_POLL_INTERVAL", "15", 5, 60)
        self.status_cache_ttl = self._clamped("BRIDGE_STATUS_CACHE_TTL", "15", 5, 60)
        self.refresh_devices_interval = self._clamped(
            "BRIDGE_REFRESH_DEVICES_INTERVAL", "600", 120, 3600,
        )

        # Discovery filters
        self.include_sites = self._list("BRIDGE_INCLUDE_SITES")
        self.exclude_sites = self._list("BRIDGE_EXCLUDE_SITES")
        self.include_devices = self._list("BRIDGE_INCLUDE_DEVICES")
        self.exclude_devices = self._list("BRIDGE_EXCLUDE_DEVICES")
        self.include_outlets = self._list("BRIDGE_INCLUDE_OUTLETS")
        self.exclude_outlets = self._list("BRIDGE_EXCLUDE_OUTLETS")
        self.include_ports = self._list("BRIDGE_INCLUDE_PORTS")
        self.exclude_ports = self._list("BRIDGE_EXCLUDE_PORTS")
        self.include_inactive_ports = self._bool("BRIDGE_INCLUDE_INACTIVE_PORTS", "false")

        # Control switch
        self.control_switch = self._bool("BRIDGE_CONTROL_SWITCH", "false")
        self.control_switch_name = os.environ.get(
            "BRIDGE_CONTROL_SWITCH_NAME", "UniFi Control Enabled",
        )
        self.control_switch_timeout = self._float("BRIDGE_CONTROL_SWITCH_TIMEOUT", "0", 0, 86400)
        self.guard_outlets = self._bool("BRIDGE_GUARD_OUTLETS", "true")
        self.guard_ports = self._bool("BRIDGE_GUARD_PORTS", "true")

        # MQTT
        self.mqtt_broker = os.environ.get("MQTT_BROKER", "mosquitto")
        self.mqtt_port = self._int("MQTT_PORT", "1883", 1, 65535)
        self.mqtt_username = os.environ.get("MQTT_USERNAME", "")
        self.mqtt_password = os.environ.get("MQTT_PASSWORD", "")
        self.mqtt_topic_prefix = os.environ.get("MQTT_TOPIC_PREFIX", "unifi").strip("/ ")

        self.log_api_responses = self._bool("BRIDGE_LOG_API_RESPONSES", "false")
        self.mock_mode = self._bool("BRIDGE_MOCK_MODE", "false")
        self.log_level = os.environ.get("BRIDGE_LOG_LEVEL", "INFO")

        if not self.unifi_host and not self.mock_mode:
            raise ConfigError("UNIFI_HOST must not be empty")

        # Validate topic prefix has no MQTT-unsafe characters
        if not self.mqtt_topic_prefix or any(c in self.mqtt_topic_prefix for c in "#+ "):
            raise ConfigError(
                f"MQTT_TOPIC_PREFIX contains invalid characters: {self.mqtt_topic_prefix!r}"
            )

        self._log_config()

    @staticmethod
    def _int(env: str, default: str, min_val: int, max_val: int) -> int:
        raw = os.environ.get(env, default)
        try:
            val = int(raw)
        except (ValueError, TypeError):
            raise ConfigError(f"{env}={raw!r} is not a valid integer")
        if not (min_val <= val <= max_val):
            raise ConfigError(f"{env}={val} out of range [{min_val}, {max_val}]")
        return val

    @staticmethod
    def _float(env: str, default: str, min_val: float, max_val: float) -> float:
        raw = os.environ.get(env, default)
        try:
            val = float(raw)
        except (ValueError, TypeError):
            raise ConfigError(f"{env}={raw!r} is not a valid number")
        if not (min_val <= val <= max_val):
            raise ConfigError(f"{env}={val} out of range [{min_val}, {max_val}]")
        return val

    @staticmethod
    def _clamped(env: str, default: str, min_val: float, max_val: float) -> float:
        raw = os.environ.get(env, default)
        try:
            val = float(raw)
        except (ValueError, TypeError):
            raise ConfigError(f"{env}={raw!r} is not a valid number")
        if val <= 0:
            val = float(default)
        clamped = max(min_val, min(max_val, val))
        if clamped != val:
            logger.warning("%s=%s clamped to %s", env, raw, clamped)
        return clamped

    @staticmethod
    def _bool(env: str, default: str) -> bool:
        return os.environ.get(env, default).strip().lower() in TRUE_VALUES

    @staticmethod
    def _list(env: str) -> list[str]:
        raw = os.environ.get(env, "")
        return [item.strip() for item in raw.split(",") if item.strip()]

    def _log_config(self):
        logger.info(
            "Config: controller=%s:%d site=%s mock=%s poll=%.0fs ttl=%.0fs "
            "refresh=%.0fs mqtt=%s:%d prefix=%s",
            self.unifi_host, self.unifi_port, self.unifi_site or "(all)",
            self.mock_mode, self.status_poll_interval, self.status_cache_ttl,
            self.refresh_devices_interval, self.mqtt_broker, self.mqtt_port,
            self.mqtt_topic_prefix,
        )
