"""Custom exception hierarchy for the v1 compatibility bridge."""

from __future__ import annotations

from typing import Any


class BridgeError(Exception):
    """Base exception for all bridge errors."""


class ConfigError(BridgeError):
    """Invalid or missing configuration."""


class ReplayFormatError(ConfigError):
    """A replay events file could not be parsed into change notifications."""


class UnsupportedDatacenterKind(BridgeError):
    """The instance carries a datacenter descriptor other than the cloud (AWS) variant."""

    def __init__(self, kind: str, instance_id: str | None = None):
        where = f" (instance {instance_id})" if instance_id else ""
        super().__init__(f"Unsupported datacenter kind '{kind}'{where}")
        self.kind = kind
        self.instance_id = instance_id


class UpstreamStreamTerminated(BridgeError):
    """The registry notification stream ended, normally or with an error."""

    def __init__(self, interest: Any, message: str | None = None):
        super().__init__(message or f"Notification stream for {interest} terminated")
        self.interest = interest
