"""Data models in the legacy v1 registry shape."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping

AMAZON_DATACENTER_NAME = "Amazon"

DEFAULT_RENEWAL_INTERVAL_SECS = 30
DEFAULT_LEASE_DURATION_SECS = 90


class V1InstanceStatus(str, Enum):
    UP = "UP"
    DOWN = "DOWN"
    STARTING = "STARTING"
    OUT_OF_SERVICE = "OUT_OF_SERVICE"
    UNKNOWN = "UNKNOWN"


class MetaDataKey(str, Enum):
    """Keys of the Amazon datacenter metadata mapping."""

    AMI_ID = "ami-id"
    AVAILABILITY_ZONE = "availability-zone"
    INSTANCE_ID = "instance-id"
    INSTANCE_TYPE = "instance-type"
    LOCAL_HOSTNAME = "local-hostname"
    LOCAL_IPV4 = "local-ipv4"
    PUBLIC_HOSTNAME = "public-hostname"
    PUBLIC_IPV4 = "public-ipv4"


@dataclass(frozen=True)
class AmazonInfo:
    """v1 Amazon datacenter descriptor: a name, an id and a flat metadata mapping."""

    id: str
    metadata: Mapping[str, str | None] = field(default_factory=dict, hash=False)
    name: str = AMAZON_DATACENTER_NAME

    def __post_init__(self) -> None:
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    def get(self, key: MetaDataKey | str) -> str | None:
        return self.metadata.get(MetaDataKey(key).value)


@dataclass(frozen=True)
class LeaseInfo:
    renewal_interval_secs: int = DEFAULT_RENEWAL_INTERVAL_SECS
    duration_secs: int = DEFAULT_LEASE_DURATION_SECS


@dataclass(frozen=True)
class V1InstanceInfo:
    """A single instance as legacy v1 clients see it."""

    instance_id: str
    app_name: str | None
    app_group_name: str | None
    asg_name: str | None
    vip_address: str | None
    secure_vip_address: str | None
    status: V1InstanceStatus
    host_name: str | None
    ip_address: str | None
    port: int
    secure_port: int
    datacenter_info: AmazonInfo
    lease_info: LeaseInfo
    port_enabled: bool = True
    secure_port_enabled: bool = False
    home_page_url: str | None = None
    status_page_url: str | None = None
    health_check_urls: frozenset[str] = field(default_factory=frozenset)
    metadata: Mapping[str, str] = field(default_factory=dict, hash=False)

    @property
    def app_key(self) -> str:
        """Case-normalized application name used for grouping and lookups."""
        return (self.app_name or "").upper()
