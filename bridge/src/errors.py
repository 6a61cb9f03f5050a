# UniFi Smart Power Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Exception hierarchy for controller and status-engine failures."""


class ControllerError(Exception):
    """Base class for failures talking to the UniFi controller."""


class AuthError(ControllerError):
    """Controller rejected the configured credentials. Not retried."""


class TransportError(ControllerError):
    """Network failure, timeout, or malformed reply from the controller."""


class WriteRejected(ControllerError):
    """Controller refused an override payload.

    Attributes:
        device_id: Controller id of the device being written
        reason: Message returned by the controller, if any
    """

    def __init__(self, device_id: str, reason: str = ""):
        self.device_id = device_id
        self.reason = reason
        super().__init__(
            f"controller rejected overrides for device {device_id}"
            + (f": {reason}" if reason else "")
        )


class NotFoundError(LookupError):
    """Requested device, outlet, or port is not in the latest snapshot."""
