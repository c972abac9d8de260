"""Data models for v2 registry instances and their change notifications."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class InstanceStatus(str, Enum):
    """Lifecycle status of a v2 instance."""

    UP = "Up"
    DOWN = "Down"
    STARTING = "Starting"
    OUT_OF_SERVICE = "OutOfService"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class ServicePort:
    """A service endpoint exposed by an instance."""

    port: int
    name: str = ""  # protocol / endpoint label, e.g. "http"
    secure: bool = False


@dataclass(frozen=True)
class NetworkAddress:
    host_name: str | None = None
    ip_address: str | None = None


@dataclass(frozen=True)
class BasicDataCenterInfo:
    """Non-cloud datacenter descriptor (e.g. an on-premise datacenter)."""

    name: str = "MyOwn"


@dataclass(frozen=True)
class AwsDataCenterInfo:
    """Cloud (AWS) datacenter descriptor."""

    instance_id: str
    ami_id: str | None = None
    zone: str | None = None
    instance_type: str | None = None
    private_address: NetworkAddress = field(default_factory=NetworkAddress)
    public_address: NetworkAddress = field(default_factory=NetworkAddress)

    @property
    def name(self) -> str:
        return "AWS"


DataCenterInfo = AwsDataCenterInfo | BasicDataCenterInfo


@dataclass(frozen=True)
class InstanceInfo:
    """A single instance record as held by the v2 registry."""

    id: str
    app: str | None = None
    app_group: str | None = None
    asg: str | None = None
    status: InstanceStatus | str = InstanceStatus.UNKNOWN
    vip_address: str | None = None
    secure_vip_address: str | None = None
    ports: frozenset[ServicePort] = field(default_factory=frozenset)
    datacenter_info: DataCenterInfo | None = None
    home_page_url: str | None = None
    status_page_url: str | None = None
    health_check_urls: frozenset[str] = field(default_factory=frozenset)
    metadata: dict[str, str] = field(default_factory=dict, hash=False)


class ChangeKind(str, Enum):
    ADD = "add"
    MODIFY = "modify"
    DELETE = "delete"


@dataclass(frozen=True)
class ChangeNotification:
    """One add/modify/delete event for an instance.

    Delete notifications only rely on ``data.id``.
    """

    kind: ChangeKind
    data: InstanceInfo

    @property
    def instance_id(self) -> str:
        return self.data.id

    @classmethod
    def add(cls, info: InstanceInfo) -> ChangeNotification:
        return cls(ChangeKind.ADD, info)

    @classmethod
    def modify(cls, info: InstanceInfo) -> ChangeNotification:
        return cls(ChangeKind.MODIFY, info)

    @classmethod
    def delete(cls, instance_id: str) -> ChangeNotification:
        return cls(ChangeKind.DELETE, InstanceInfo(id=instance_id))
