"""Subscription interests: which instances a notification stream is scoped to."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from .models import InstanceInfo


class InterestKind(str, Enum):
    FULL = "full"
    APPLICATIONS = "applications"
    VIPS = "vips"
    SECURE_VIPS = "secure_vips"
    INSTANCES = "instances"


@dataclass(frozen=True)
class Interest:
    """What a subscriber wants to hear about.

    Application and VIP names are matched case-insensitively, instance ids exactly.
    """

    kind: InterestKind = InterestKind.FULL
    values: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def full_registry(cls) -> Interest:
        return cls()

    @classmethod
    def for_applications(cls, *names: str) -> Interest:
        return cls(InterestKind.APPLICATIONS, frozenset(n.lower() for n in names))

    @classmethod
    def for_vips(cls, *vips: str) -> Interest:
        return cls(InterestKind.VIPS, frozenset(v.lower() for v in vips))

    @classmethod
    def for_secure_vips(cls, *vips: str) -> Interest:
        return cls(InterestKind.SECURE_VIPS, frozenset(v.lower() for v in vips))

    @classmethod
    def for_instances(cls, *instance_ids: str) -> Interest:
        return cls(InterestKind.INSTANCES, frozenset(instance_ids))

    @classmethod
    def from_config(cls, kind: str, values: list[str]) -> Interest:
        factories = {
            InterestKind.FULL: lambda: cls.full_registry(),
            InterestKind.APPLICATIONS: lambda: cls.for_applications(*values),
            InterestKind.VIPS: lambda: cls.for_vips(*values),
            InterestKind.SECURE_VIPS: lambda: cls.for_secure_vips(*values),
            InterestKind.INSTANCES: lambda: cls.for_instances(*values),
        }
        return factories[InterestKind(kind)]()

    def matches(self, info: InstanceInfo) -> bool:
        if self.kind is InterestKind.FULL:
            return True
        if self.kind is InterestKind.INSTANCES:
            return info.id in self.values
        if self.kind is InterestKind.APPLICATIONS:
            candidate = info.app
        elif self.kind is InterestKind.VIPS:
            candidate = info.vip_address
        else:
            candidate = info.secure_vip_address
        return candidate is not None and candidate.lower() in self.values

    def __str__(self) -> str:
        if self.kind is InterestKind.FULL:
            return "Interest(full)"
        return f"Interest({self.kind.value}={','.join(sorted(self.values))})"
