"""Folds a v2 notification stream into versioned, v1-shaped registry snapshots."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from functools import cached_property
from types import MappingProxyType
from typing import Mapping, Sequence

from .exceptions import UnsupportedDatacenterKind, UpstreamStreamTerminated
from .registry import NotificationSource, Subscription
from .registry.interest import Interest
from .registry.models import ChangeKind, ChangeNotification
from .v1.digest import application_digest, apps_hash_code
from .v1.mapper import map_instance
from .v1.models import LeaseInfo, V1InstanceInfo

logger = logging.getLogger(__name__)

DEFAULT_DIGEST_BATCH_SIZE = 100
MAX_APPLY_BATCH = 1000  # queued notifications folded into one published snapshot


def _empty() -> Mapping:
    return MappingProxyType({})


@dataclass(frozen=True, eq=False)
class ApplicationGroup:
    """Immutable set of live instances sharing one (case-normalized) app name.

    The digest is computed on first access and cached; a change to the group
    always produces a new ApplicationGroup, so a cached digest is never stale.
    """

    name: str
    members: Mapping[str, V1InstanceInfo] = field(default_factory=_empty)

    @property
    def key(self) -> str:
        return self.name.upper()

    @cached_property
    def instances(self) -> tuple[V1InstanceInfo, ...]:
        return tuple(self.members[iid] for iid in sorted(self.members))

    @cached_property
    def digest(self) -> str:
        return application_digest(self.name, self.members.values())

    @property
    def digest_computed(self) -> bool:
        return "digest" in self.__dict__

    def get(self, instance_id: str) -> V1InstanceInfo | None:
        return self.members.get(instance_id)

    def __len__(self) -> int:
        return len(self.members)


@dataclass(frozen=True, eq=False)
class RegistrySnapshot:
    """Point-in-time view of all application groups; never mutated after publication."""

    version: int = 0
    applications: Mapping[str, ApplicationGroup] = field(default_factory=_empty)
    instance_index: Mapping[str, str] = field(default_factory=_empty)  # instance id -> application key

    def get_application(self, name: str) -> ApplicationGroup | None:
        return self.applications.get(name.upper())

    def get_instance(self, instance_id: str) -> V1InstanceInfo | None:
        key = self.instance_index.get(instance_id)
        if key is None:
            return None
        return self.applications[key].get(instance_id)

    def instances(self) -> tuple[V1InstanceInfo, ...]:
        """All instances, ordered by application key then instance id."""
        return tuple(
            inst
            for key in sorted(self.applications)
            for inst in self.applications[key].instances
        )

    def get_by_vip(self, vip: str) -> tuple[V1InstanceInfo, ...]:
        return self._by_address(vip, secure=False)

    def get_by_secure_vip(self, vip: str) -> tuple[V1InstanceInfo, ...]:
        return self._by_address(vip, secure=True)

    def _by_address(self, vip: str, secure: bool) -> tuple[V1InstanceInfo, ...]:
        wanted = vip.strip().lower()
        result = []
        for inst in self.instances():
            raw = inst.secure_vip_address if secure else inst.vip_address
            # v1 VIP fields may hold a comma-separated list
            if raw and wanted in (v.strip().lower() for v in raw.split(",")):
                result.append(inst)
        return tuple(result)

    @cached_property
    def apps_hash_code(self) -> str:
        return apps_hash_code(self.instances())

    @property
    def total_instances(self) -> int:
        return len(self.instance_index)


class _SnapshotBuilder:
    """Mutable working copy of a snapshot for one batch of notifications.

    Each touched group's members are copied once per batch, so folding a batch
    costs one pass over the registry plus the notifications themselves.
    """

    def __init__(self, base: RegistrySnapshot):
        self._base = base
        self._apps = dict(base.applications)
        self._index = dict(base.instance_index)
        # key -> (group name, working members) for groups changed in this batch
        self._touched: dict[str, tuple[str, dict[str, V1InstanceInfo]]] = {}

    @property
    def touched(self) -> set[str]:
        return set(self._touched)

    def _members(self, key: str, name: str) -> dict[str, V1InstanceInfo]:
        entry = self._touched.get(key)
        if entry is None:
            group = self._apps.get(key)
            entry = (name, {}) if group is None else (group.name, dict(group.members))
            self._touched[key] = entry
        elif not entry[1]:
            # Group emptied earlier in the batch; the next member names it again
            entry = (name, entry[1])
            self._touched[key] = entry
        return entry[1]

    def put(self, instance: V1InstanceInfo) -> str | None:
        """Add or replace an instance; returns the previous key if it moved between groups."""
        key = instance.app_key
        previous_key = self._index.get(instance.instance_id)
        moved = previous_key is not None and previous_key != key
        if moved:
            self.remove(instance.instance_id)
        self._members(key, instance.app_name or "")[instance.instance_id] = instance
        self._index[instance.instance_id] = key
        return previous_key if moved else None

    def remove(self, instance_id: str) -> str | None:
        """Remove an instance; returns the key of the group it left, or None if unknown."""
        key = self._index.pop(instance_id, None)
        if key is None:
            return None
        del self._members(key, "")[instance_id]
        return key

    def build(self, applied: int) -> RegistrySnapshot:
        for key, (name, members) in self._touched.items():
            if members:
                if key not in self._base.applications:
                    logger.info("New application %s", key, extra={"app": key})
                self._apps[key] = ApplicationGroup(name=name, members=MappingProxyType(members))
            elif self._apps.pop(key, None) is not None:
                logger.info("Application %s removed (no instances left)", key, extra={"app": key})
        return RegistrySnapshot(
            version=self._base.version + applied,
            applications=MappingProxyType(self._apps),
            instance_index=MappingProxyType(self._index),
        )


class AggregatorState(str, Enum):
    UNINITIALIZED = "uninitialized"
    STREAMING = "streaming"
    TERMINATED = "terminated"


class SnapshotAggregator:
    """Consumes one interest subscription and publishes immutable snapshots.

    A single consumer thread applies notifications; readers call snapshot() and
    get the latest published RegistrySnapshot without taking any lock. When
    notifications queue up faster than they are applied, the consumer folds the
    backlog into one snapshot.

    Usage:
        with SnapshotAggregator(source, Interest.full_registry()) as aggregator:
            view = aggregator.snapshot()
    """

    def __init__(
        self,
        source: NotificationSource,
        interest: Interest | None = None,
        digest_batch_size: int = DEFAULT_DIGEST_BATCH_SIZE,
        lease: LeaseInfo | None = None,
    ):
        if digest_batch_size < 0:
            raise ValueError("digest_batch_size must be >= 0")
        self._source = source
        self._interest = interest or Interest.full_registry()
        self._digest_batch_size = digest_batch_size
        self._lease = lease

        self._write_lock = threading.Lock()
        self._snapshot = RegistrySnapshot()
        self._state = AggregatorState.UNINITIALIZED
        self._subscription: Subscription | None = None
        self._thread: threading.Thread | None = None
        self._terminated = threading.Event()
        self._termination_error: UpstreamStreamTerminated | None = None

        # Keys of groups changed since the last batch boundary; only tracked when batching
        self._dirty: set[str] = set()
        self._since_boundary = 0

    @property
    def interest(self) -> Interest:
        return self._interest

    @property
    def state(self) -> AggregatorState:
        return self._state

    @property
    def termination_error(self) -> UpstreamStreamTerminated | None:
        return self._termination_error

    def snapshot(self) -> RegistrySnapshot:
        return self._snapshot

    # ── Lifecycle ───────────────────────────────────────────────────

    def start(self) -> None:
        """Subscribe to the source and start the consumer thread."""
        with self._write_lock:
            if self._state is not AggregatorState.UNINITIALIZED:
                raise RuntimeError(f"Aggregator cannot be started in state {self._state.value}")
            self._subscription = self._source.subscribe(self._interest)
            self._state = AggregatorState.STREAMING

        self._thread = threading.Thread(
            target=self._consume,
            name=f"aggregator-{self._interest}",
            daemon=True,
        )
        self._thread.start()
        logger.info("Aggregator streaming", extra={"interest": str(self._interest)})

    def shutdown(self, timeout: float | None = 5.0) -> None:
        """Stop applying notifications and release the upstream subscription."""
        with self._write_lock:
            if self._state is AggregatorState.TERMINATED:
                return
            self._state = AggregatorState.TERMINATED
            subscription = self._subscription

        logger.info(
            "Aggregator shut down at version %d", self._snapshot.version,
            extra={"interest": str(self._interest)},
        )
        if subscription is not None:
            subscription.close()
        self._terminated.set()

        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until terminated.

        Returns True after an explicit shutdown, False on timeout, and raises
        UpstreamStreamTerminated when the stream ended on its own.
        """
        if not self._terminated.wait(timeout):
            return False
        if self._termination_error is not None:
            raise self._termination_error
        return True

    def __enter__(self) -> SnapshotAggregator:
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.shutdown()
        return False

    def _consume(self) -> None:
        error: Exception | None = None
        try:
            for notification in self._subscription:
                batch = [notification, *self._subscription.drain(MAX_APPLY_BATCH - 1)]
                if not self.apply_all(batch):
                    break
        except Exception as exc:
            error = exc
        self._on_stream_end(error)

    def _on_stream_end(self, error: Exception | None) -> None:
        with self._write_lock:
            if self._state is AggregatorState.TERMINATED:
                # Shutdown closed the subscription; nothing to report
                return
            self._state = AggregatorState.TERMINATED

            if error is None:
                terminated = UpstreamStreamTerminated(self._interest)
                logger.warning(
                    "Notification stream completed at version %d", self._snapshot.version,
                    extra={"interest": str(self._interest)},
                )
            else:
                terminated = UpstreamStreamTerminated(
                    self._interest,
                    f"Notification stream for {self._interest} failed: {error}",
                )
                terminated.__cause__ = error
                logger.error(
                    "Notification stream failed at version %d: %s", self._snapshot.version, error,
                    extra={"interest": str(self._interest)},
                )
            self._termination_error = terminated

        self._subscription.close()
        self._terminated.set()

    # ── Folding ─────────────────────────────────────────────────────

    def apply(self, notification: ChangeNotification) -> bool:
        """Apply one notification and publish the resulting snapshot.

        Returns False (discarding the notification) once the aggregator is terminated.
        """
        return self.apply_all((notification,))

    def apply_all(self, notifications: Sequence[ChangeNotification]) -> bool:
        """Apply notifications in order and publish a single snapshot for all of them.

        The version still advances by one per notification; readers only miss the
        intermediate states. Returns False (discarding the batch) once terminated.
        """
        with self._write_lock:
            if self._state is AggregatorState.TERMINATED:
                logger.debug("Discarding %d notifications after termination", len(notifications))
                return False
            if not notifications:
                return True

            start = time.monotonic()
            builder = _SnapshotBuilder(self._snapshot)
            for notification in notifications:
                self._fold(builder, notification)
            self._snapshot = builder.build(len(notifications))

            if self._digest_batch_size:
                self._dirty.update(builder.touched)
                self._since_boundary += len(notifications)
                if self._since_boundary >= self._digest_batch_size:
                    self._compute_dirty_digests(self._snapshot)

            logger.debug(
                "Applied %d notifications", len(notifications),
                extra={
                    "version": self._snapshot.version,
                    "elapsed_seconds": round(time.monotonic() - start, 6),
                },
            )
            return True

    def _fold(self, builder: _SnapshotBuilder, notification: ChangeNotification) -> None:
        instance_id = notification.instance_id

        if notification.kind is ChangeKind.DELETE:
            if builder.remove(instance_id) is None:
                logger.debug("Instance %s not in view, nothing to remove", instance_id)
            return

        try:
            instance = map_instance(notification.data, self._lease)
        except UnsupportedDatacenterKind as exc:
            logger.warning(
                "Dropping instance %s from the view: %s", instance_id, exc,
                extra={"instance_id": instance_id, "app": notification.data.app},
            )
            builder.remove(instance_id)
            return

        previous_key = builder.put(instance)
        if previous_key is not None:
            logger.info(
                "Instance %s moved from %s to %s", instance_id, previous_key, instance.app_key,
                extra={"instance_id": instance_id, "app": instance.app_key},
            )

    def _compute_dirty_digests(self, snapshot: RegistrySnapshot) -> None:
        for key in self._dirty:
            group = snapshot.applications.get(key)
            if group is not None:
                group.digest  # noqa: B018 (fills the cached digest)
        logger.debug("Batch boundary: computed %d digests", len(self._dirty),
                     extra={"version": snapshot.version})
        self._dirty.clear()
        self._since_boundary = 0
