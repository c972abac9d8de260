"""Finite notification source replaying a recorded list of change events.

Events files are YAML::

    events:
      - add:
          id: i-1
          app: WebServer
          status: Up
          ports: [{port: 8080}, {port: 8443, secure: true}]
          datacenter:
            kind: aws
            instance_id: i-1
            zone: us-east-1a
            public_address: {host_name: ec2-1.example.com, ip_address: 54.0.0.1}
      - modify: {...}
      - delete: i-1
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable

import yaml

from ..exceptions import ReplayFormatError
from .channel import ChannelSubscription, NotificationChannel
from .interest import Interest
from .models import (
    AwsDataCenterInfo,
    BasicDataCenterInfo,
    ChangeKind,
    ChangeNotification,
    DataCenterInfo,
    InstanceInfo,
    InstanceStatus,
    NetworkAddress,
    ServicePort,
)

logger = logging.getLogger(__name__)


class ReplayNotificationSource:
    """Replays a fixed sequence of notifications to every subscriber, then completes."""

    def __init__(self, notifications: Iterable[ChangeNotification]):
        self._notifications = list(notifications)

    @classmethod
    def from_file(cls, path: str | Path) -> ReplayNotificationSource:
        path = Path(path)
        if not path.is_file():
            raise ReplayFormatError(f"Events file not found: {path}")

        try:
            with open(path) as f:
                raw = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ReplayFormatError(f"Events file {path} is not valid YAML: {exc}") from exc

        notifications = parse_events(raw)
        logger.info("Loaded %d events from %s", len(notifications), path)
        return cls(notifications)

    def __len__(self) -> int:
        return len(self._notifications)

    def subscribe(self, interest: Interest) -> ChannelSubscription:
        # Subscribe before publishing so every recorded event is delivered, not only the live records
        channel = NotificationChannel()
        subscription = channel.subscribe(interest)
        for notification in self._notifications:
            channel.publish(notification)
        channel.complete()
        return subscription


# ── Parsing ─────────────────────────────────────────────────────────


def parse_events(raw: Any) -> list[ChangeNotification]:
    """Parse the top-level ``events`` document into change notifications."""
    if not isinstance(raw, dict) or not isinstance(raw.get("events"), list):
        raise ReplayFormatError("Events file must be a mapping with an 'events' list")

    notifications: list[ChangeNotification] = []
    for index, entry in enumerate(raw["events"]):
        if not isinstance(entry, dict) or len(entry) != 1:
            raise ReplayFormatError(f"Event #{index} must have exactly one of add/modify/delete")
        (kind_name, body), = entry.items()
        try:
            kind = ChangeKind(kind_name)
        except ValueError:
            raise ReplayFormatError(f"Event #{index} has unknown kind '{kind_name}'") from None

        if kind is ChangeKind.DELETE:
            instance_id = body.get("id") if isinstance(body, dict) else body
            if not instance_id:
                raise ReplayFormatError(f"Event #{index}: delete requires an instance id")
            notifications.append(ChangeNotification.delete(str(instance_id)))
        else:
            notifications.append(ChangeNotification(kind, _parse_instance(body, index)))
    return notifications


def _parse_instance(body: Any, index: int) -> InstanceInfo:
    if not isinstance(body, dict) or not body.get("id"):
        raise ReplayFormatError(f"Event #{index}: instance must be a mapping with an 'id'")

    try:
        ports = frozenset(
            ServicePort(port=int(p["port"]), name=p.get("name", ""), secure=bool(p.get("secure", False)))
            for p in body.get("ports", [])
        )
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        raise ReplayFormatError(f"Event #{index}: invalid ports: {exc}") from exc

    health_check_urls = body.get("health_check_urls") or []
    if not isinstance(health_check_urls, list):
        raise ReplayFormatError(f"Event #{index}: health_check_urls must be a list")

    metadata = body.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise ReplayFormatError(f"Event #{index}: metadata must be a mapping")

    return InstanceInfo(
        id=str(body["id"]),
        app=body.get("app"),
        app_group=body.get("app_group"),
        asg=body.get("asg"),
        status=_parse_status(body.get("status")),
        vip_address=body.get("vip_address"),
        secure_vip_address=body.get("secure_vip_address"),
        ports=ports,
        datacenter_info=_parse_datacenter(body.get("datacenter"), index),
        home_page_url=body.get("home_page_url"),
        status_page_url=body.get("status_page_url"),
        health_check_urls=frozenset(str(url) for url in health_check_urls),
        metadata={str(k): str(v) for k, v in metadata.items()},
    )


def _parse_status(value: Any) -> InstanceStatus | str:
    if value is None:
        return InstanceStatus.UNKNOWN
    try:
        return InstanceStatus(value)
    except ValueError:
        # Registry-specific extension status, kept as-is
        return str(value)


def _parse_datacenter(raw: Any, index: int) -> DataCenterInfo | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ReplayFormatError(f"Event #{index}: datacenter must be a mapping")

    kind = str(raw.get("kind", "aws")).lower()
    if kind != "aws":
        return BasicDataCenterInfo(name=raw.get("name", kind))

    if not raw.get("instance_id"):
        raise ReplayFormatError(f"Event #{index}: aws datacenter requires 'instance_id'")
    return AwsDataCenterInfo(
        instance_id=str(raw["instance_id"]),
        ami_id=raw.get("ami_id"),
        zone=raw.get("zone"),
        instance_type=raw.get("instance_type"),
        private_address=_parse_address(raw.get("private_address")),
        public_address=_parse_address(raw.get("public_address")),
    )


def _parse_address(raw: Any) -> NetworkAddress:
    if not isinstance(raw, dict):
        return NetworkAddress()
    return NetworkAddress(host_name=raw.get("host_name"), ip_address=raw.get("ip_address"))
