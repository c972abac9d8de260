"""Stateless translation of v2 registry records into their v1 equivalents."""

from __future__ import annotations

from types import MappingProxyType

from ..exceptions import UnsupportedDatacenterKind
from ..registry.models import AwsDataCenterInfo, DataCenterInfo, InstanceInfo, InstanceStatus
from .endpoint_selector import has_port, select_port
from .models import AmazonInfo, LeaseInfo, MetaDataKey, V1InstanceInfo, V1InstanceStatus

DEFAULT_LEASE = LeaseInfo()

_STATUS_MAP: dict[str, V1InstanceStatus] = {
    InstanceStatus.UP.value.lower(): V1InstanceStatus.UP,
    InstanceStatus.DOWN.value.lower(): V1InstanceStatus.DOWN,
    InstanceStatus.STARTING.value.lower(): V1InstanceStatus.STARTING,
    InstanceStatus.OUT_OF_SERVICE.value.lower(): V1InstanceStatus.OUT_OF_SERVICE,
    InstanceStatus.UNKNOWN.value.lower(): V1InstanceStatus.UNKNOWN,
}


def map_status(status: InstanceStatus | str | None) -> V1InstanceStatus:
    """Map a v2 status to the closed v1 enumeration; unrecognized values become UNKNOWN."""
    if status is None:
        return V1InstanceStatus.UNKNOWN
    raw = status.value if isinstance(status, InstanceStatus) else str(status)
    return _STATUS_MAP.get(raw.lower(), V1InstanceStatus.UNKNOWN)


def map_datacenter(dc: DataCenterInfo | None) -> AmazonInfo:
    """Copy an AWS datacenter descriptor into the v1 Amazon shape.

    Raises UnsupportedDatacenterKind for any other descriptor variant.
    """
    if not isinstance(dc, AwsDataCenterInfo):
        kind = "none" if dc is None else getattr(dc, "name", type(dc).__name__)
        raise UnsupportedDatacenterKind(kind)

    private, public = dc.private_address, dc.public_address
    return AmazonInfo(
        id=dc.instance_id,
        metadata={
            MetaDataKey.AMI_ID.value: dc.ami_id,
            MetaDataKey.AVAILABILITY_ZONE.value: dc.zone,
            MetaDataKey.INSTANCE_ID.value: dc.instance_id,
            MetaDataKey.INSTANCE_TYPE.value: dc.instance_type,
            MetaDataKey.LOCAL_HOSTNAME.value: private.host_name,
            MetaDataKey.LOCAL_IPV4.value: private.ip_address,
            MetaDataKey.PUBLIC_HOSTNAME.value: public.host_name,
            MetaDataKey.PUBLIC_IPV4.value: public.ip_address,
        },
    )


def map_instance(info: InstanceInfo, lease: LeaseInfo | None = None) -> V1InstanceInfo:
    """Translate one v2 instance record into a v1 instance record.

    The v2 model has no lease concept, so ``lease`` (or the v1 default lease) is
    always attached.
    """
    try:
        datacenter = map_datacenter(info.datacenter_info)
    except UnsupportedDatacenterKind as exc:
        raise UnsupportedDatacenterKind(exc.kind, instance_id=info.id) from None

    public = info.datacenter_info.public_address
    return V1InstanceInfo(
        instance_id=info.id,
        app_name=info.app,
        app_group_name=info.app_group,
        asg_name=info.asg,
        vip_address=info.vip_address,
        secure_vip_address=info.secure_vip_address,
        status=map_status(info.status),
        host_name=public.host_name,
        ip_address=public.ip_address,
        port=select_port(info.ports, secure=False),
        secure_port=select_port(info.ports, secure=True),
        port_enabled=has_port(info.ports, secure=False),
        secure_port_enabled=has_port(info.ports, secure=True),
        home_page_url=info.home_page_url,
        status_page_url=info.status_page_url,
        health_check_urls=frozenset(info.health_check_urls),
        datacenter_info=datacenter,
        lease_info=lease or DEFAULT_LEASE,
        metadata=MappingProxyType(dict(info.metadata)),
    )
