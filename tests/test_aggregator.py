"""Tests for the snapshot aggregator."""

import threading
import time
from types import MappingProxyType
from unittest.mock import MagicMock

import pytest

from registry_v1_compat.aggregator import (
    AggregatorState,
    ApplicationGroup,
    RegistrySnapshot,
    SnapshotAggregator,
)
from registry_v1_compat.exceptions import UpstreamStreamTerminated
from registry_v1_compat.registry.channel import NotificationChannel
from registry_v1_compat.registry.interest import Interest
from registry_v1_compat.registry.models import BasicDataCenterInfo, ChangeNotification, InstanceStatus
from registry_v1_compat.v1.mapper import map_instance
from registry_v1_compat.v1.models import LeaseInfo, V1InstanceStatus

from samples import web_server

WAIT = 5.0


def _aggregator(**kwargs) -> SnapshotAggregator:
    return SnapshotAggregator(NotificationChannel(), **kwargs)


def _add(instance_id="i-1", **kwargs):
    return ChangeNotification.add(web_server(instance_id=instance_id, **kwargs))


def _modify(instance_id="i-1", **kwargs):
    return ChangeNotification.modify(web_server(instance_id=instance_id, **kwargs))


def _delete(instance_id="i-1"):
    return ChangeNotification.delete(instance_id)


class TestFolding:
    def test_empty_snapshot(self):
        snap = _aggregator().snapshot()
        assert snap.version == 0
        assert snap.applications == {}
        assert snap.total_instances == 0

    def test_add_creates_group(self):
        agg = _aggregator()
        agg.apply(_add("i-1"))
        snap = agg.snapshot()
        group = snap.get_application("webserver")
        assert group is not None
        assert group.name == "WebServer"
        assert [i.instance_id for i in group.instances] == ["i-1"]
        assert snap.version == 1

    def test_add_then_delete_leaves_no_trace(self):
        agg = _aggregator()
        agg.apply(_add("i-1"))
        agg.apply(_delete("i-1"))
        snap = agg.snapshot()
        assert snap.get_application("WebServer") is None
        assert snap.get_instance("i-1") is None
        assert snap.applications == {}

    def test_delete_keeps_other_members(self):
        agg = _aggregator()
        agg.apply(_add("i-1"))
        agg.apply(_add("i-2"))
        agg.apply(_delete("i-1"))
        group = agg.snapshot().get_application("WebServer")
        assert [i.instance_id for i in group.instances] == ["i-2"]

    def test_duplicate_add_is_idempotent(self):
        agg = _aggregator()
        agg.apply(_add("i-1"))
        digest = agg.snapshot().get_application("WebServer").digest
        agg.apply(_add("i-1"))
        group = agg.snapshot().get_application("WebServer")
        assert len(group) == 1
        assert group.digest == digest

    def test_modify_replaces_in_place(self):
        agg = _aggregator()
        agg.apply(_add("i-1"))
        agg.apply(_modify("i-1", status=InstanceStatus.DOWN))
        snap = agg.snapshot()
        assert len(snap.get_application("WebServer")) == 1
        assert snap.get_instance("i-1").status is V1InstanceStatus.DOWN

    def test_modify_moving_app_changes_group(self):
        agg = _aggregator()
        agg.apply(_add("i-1", app="WebServer"))
        agg.apply(_modify("i-1", app="Backend"))
        snap = agg.snapshot()
        assert snap.get_application("WebServer") is None
        assert snap.get_application("backend").get("i-1") is not None

    def test_grouping_is_case_insensitive(self):
        agg = _aggregator()
        agg.apply(_add("i-1", app="WebServer"))
        agg.apply(_add("i-2", app="WEBSERVER"))
        snap = agg.snapshot()
        assert list(snap.applications) == ["WEBSERVER"]
        assert len(snap.get_application("webServer")) == 2

    def test_delete_of_unknown_instance_is_noop(self):
        agg = _aggregator()
        agg.apply(_delete("ghost"))
        assert agg.snapshot().applications == {}

    def test_configured_lease_applied(self):
        lease = LeaseInfo(renewal_interval_secs=5, duration_secs=15)
        agg = _aggregator(lease=lease)
        agg.apply(_add("i-1"))
        assert agg.snapshot().get_instance("i-1").lease_info == lease

    def test_unsupported_datacenter_skipped(self):
        agg = _aggregator()
        agg.apply(_add("i-1"))
        agg.apply(_add("i-bad", datacenter_info=BasicDataCenterInfo()))
        agg.apply(_add("i-2"))
        snap = agg.snapshot()
        assert snap.get_instance("i-bad") is None
        assert {i.instance_id for i in snap.instances()} == {"i-1", "i-2"}

    def test_unsupported_datacenter_drops_previous_representation(self):
        agg = _aggregator()
        agg.apply(_add("i-1"))
        agg.apply(_modify("i-1", datacenter_info=BasicDataCenterInfo()))
        assert agg.snapshot().get_instance("i-1") is None

    def test_published_snapshots_are_not_mutated(self):
        agg = _aggregator()
        agg.apply(_add("i-1"))
        before = agg.snapshot()
        agg.apply(_add("i-2"))
        agg.apply(_delete("i-1"))
        assert before.version == 1
        assert [i.instance_id for i in before.instances()] == ["i-1"]
        with pytest.raises(TypeError):
            before.applications["X"] = None  # type: ignore[index]


class TestDigests:
    def test_digest_changes_with_membership(self):
        agg = _aggregator()
        agg.apply(_add("i-1"))
        first = agg.snapshot().get_application("WebServer").digest
        agg.apply(_add("i-2"))
        second = agg.snapshot().get_application("WebServer").digest
        assert first != second

    def test_digest_changes_with_status(self):
        agg = _aggregator()
        agg.apply(_add("i-1"))
        first = agg.snapshot().get_application("WebServer").digest
        agg.apply(_modify("i-1", status=InstanceStatus.OUT_OF_SERVICE))
        assert agg.snapshot().get_application("WebServer").digest != first

    def test_digest_unchanged_by_non_identity_fields(self):
        agg = _aggregator()
        agg.apply(_add("i-1"))
        first = agg.snapshot().get_application("WebServer").digest
        agg.apply(_modify("i-1", home_page_url="http://moved/"))
        assert agg.snapshot().get_application("WebServer").digest == first

    def test_digest_lazy_without_batching(self):
        agg = _aggregator(digest_batch_size=0)
        agg.apply(_add("i-1"))
        group = agg.snapshot().get_application("WebServer")
        assert not group.digest_computed
        digest = group.digest
        assert group.digest_computed
        assert group.digest == digest

    def test_batch_boundary_precomputes_dirty_digests(self):
        agg = _aggregator(digest_batch_size=2)
        agg.apply(_add("i-1"))
        assert not agg.snapshot().get_application("WebServer").digest_computed
        agg.apply(_add("i-2", app="Backend"))
        snap = agg.snapshot()
        assert snap.get_application("WebServer").digest_computed
        assert snap.get_application("Backend").digest_computed

    def test_negative_batch_size_rejected(self):
        with pytest.raises(ValueError):
            _aggregator(digest_batch_size=-1)

    def test_apps_hash_code(self):
        agg = _aggregator()
        agg.apply(_add("i-1"))
        agg.apply(_add("i-2", status=InstanceStatus.DOWN))
        agg.apply(_add("i-3", app="Backend"))
        assert agg.snapshot().apps_hash_code == "DOWN_1_UP_2_"


class TestLookups:
    def test_by_vip_case_insensitive_and_comma_separated(self):
        agg = _aggregator()
        agg.apply(_add("i-1", vip_address="WebServer.vip:7001,web-alias.vip"))
        agg.apply(_add("i-2", app="Backend", vip_address="backend.vip"))
        snap = agg.snapshot()
        assert [i.instance_id for i in snap.get_by_vip("webserver.vip:7001")] == ["i-1"]
        assert [i.instance_id for i in snap.get_by_vip("web-alias.vip")] == ["i-1"]
        assert snap.get_by_vip("nothing.vip") == ()

    def test_by_secure_vip(self):
        agg = _aggregator()
        agg.apply(_add("i-1"))
        assert len(agg.snapshot().get_by_secure_vip("webserver-secure.vip:7002")) == 1

    def test_instances_ordered(self):
        agg = _aggregator()
        agg.apply(_add("i-2", app="b"))
        agg.apply(_add("i-1", app="b"))
        agg.apply(_add("i-9", app="a"))
        assert [i.instance_id for i in agg.snapshot().instances()] == ["i-9", "i-1", "i-2"]


class TestApplicationGroup:
    def test_key_and_ordering(self):
        members = {iid: _v1_instance(iid) for iid in ("i-2", "i-1")}
        group = ApplicationGroup(name="WebServer", members=MappingProxyType(members))
        assert group.key == "WEBSERVER"
        assert len(group) == 2
        assert [i.instance_id for i in group.instances] == ["i-1", "i-2"]
        assert group.get("ghost") is None

    def test_group_name_from_first_member(self):
        agg = _aggregator()
        agg.apply(_add("i-1", app="WebServer"))
        agg.apply(_add("i-2", app="WEBSERVER"))
        assert agg.snapshot().get_application("webserver").name == "WebServer"


def _v1_instance(instance_id):
    return map_instance(web_server(instance_id=instance_id))


class TestBatching:
    def test_apply_all_publishes_one_snapshot(self):
        agg = _aggregator()
        agg.apply(_add("i-0"))
        before = agg.snapshot()
        assert agg.apply_all([_add("i-1"), _add("i-2", app="Backend"), _delete("i-0")]) is True
        snap = agg.snapshot()
        assert snap.version == before.version + 3
        assert {i.instance_id for i in snap.instances()} == {"i-1", "i-2"}
        assert before.get_instance("i-0") is not None

    def test_apply_all_matches_one_by_one(self):
        notifications = [
            _add("i-1"),
            _add("i-2"),
            _modify("i-1", app="Backend"),
            _delete("i-2"),
            _add("i-3", status=InstanceStatus.DOWN),
        ]
        one_by_one = _aggregator()
        for notification in notifications:
            one_by_one.apply(notification)
        batched = _aggregator()
        batched.apply_all(notifications)

        expected, actual = one_by_one.snapshot(), batched.snapshot()
        assert actual.version == expected.version
        assert sorted(actual.applications) == sorted(expected.applications)
        for key, group in expected.applications.items():
            assert actual.applications[key].digest == group.digest

    def test_group_emptied_and_refilled_in_one_batch(self):
        agg = _aggregator()
        agg.apply(_add("i-1", app="WebServer"))
        agg.apply_all([_delete("i-1"), _add("i-2", app="WEBSERVER")])
        group = agg.snapshot().get_application("webserver")
        assert group.name == "WEBSERVER"
        assert [i.instance_id for i in group.instances] == ["i-2"]

    def test_large_batch_folds_in_linear_time(self):
        agg = _aggregator()
        started = time.monotonic()
        agg.apply_all([_add(f"i-{n}") for n in range(20000)])
        assert time.monotonic() - started < 10.0
        assert agg.snapshot().total_instances == 20000

    def test_consumer_folds_queued_backlog(self):
        channel = NotificationChannel()
        for n in range(50):
            channel.add(web_server(f"i-{n}"))
        channel.complete()

        agg = SnapshotAggregator(channel)
        agg.apply_all = MagicMock(wraps=agg.apply_all)
        agg.start()
        with pytest.raises(UpstreamStreamTerminated):
            agg.wait(WAIT)

        assert agg.apply_all.call_count == 1
        assert agg.snapshot().version == 50

    def test_dirty_groups_untracked_without_batching(self):
        agg = _aggregator(digest_batch_size=0)
        for n in range(10):
            agg.apply(_add(f"i-{n}", app=f"app-{n}"))
        assert agg._dirty == set()


class TestStreaming:
    def test_consumes_channel_until_shutdown(self):
        channel = NotificationChannel()
        agg = SnapshotAggregator(channel, Interest.full_registry())
        agg.start()
        assert agg.state is AggregatorState.STREAMING

        channel.add(web_server("i-1"))
        channel.add(web_server("i-2"))
        _wait_for(lambda: agg.snapshot().version == 2)

        agg.shutdown()
        assert agg.state is AggregatorState.TERMINATED
        assert agg.wait(WAIT) is True
        assert channel.subscriber_count == 0
        assert agg.snapshot().total_instances == 2

    def test_no_updates_after_shutdown(self):
        channel = NotificationChannel()
        agg = SnapshotAggregator(channel)
        agg.start()
        channel.add(web_server("i-1"))
        _wait_for(lambda: agg.snapshot().version == 1)
        agg.shutdown()

        channel.add(web_server("i-2"))
        assert agg.apply(_add("i-3")) is False
        assert agg.snapshot().version == 1

    def test_stream_completion_surfaced(self):
        channel = NotificationChannel()
        agg = SnapshotAggregator(channel)
        agg.start()
        channel.add(web_server("i-1"))
        channel.complete()

        with pytest.raises(UpstreamStreamTerminated) as excinfo:
            agg.wait(WAIT)
        assert excinfo.value.__cause__ is None
        assert agg.state is AggregatorState.TERMINATED
        assert agg.termination_error is excinfo.value
        # Last snapshot stays readable
        assert agg.snapshot().get_instance("i-1") is not None

    def test_stream_error_surfaced_with_cause(self):
        channel = NotificationChannel()
        agg = SnapshotAggregator(channel, Interest.for_applications("WebServer"))
        agg.start()
        channel.fail(ConnectionError("registry connection lost"))

        with pytest.raises(UpstreamStreamTerminated, match="registry connection lost") as excinfo:
            agg.wait(WAIT)
        assert isinstance(excinfo.value.__cause__, ConnectionError)
        assert excinfo.value.interest == Interest.for_applications("WebServer")

    def test_fold_error_terminates_and_releases_subscription(self, monkeypatch):
        def broken_mapper(info, lease=None):
            raise RuntimeError("mapper bug")

        monkeypatch.setattr("registry_v1_compat.aggregator.map_instance", broken_mapper)
        channel = NotificationChannel()
        agg = SnapshotAggregator(channel)
        agg.start()
        channel.add(web_server("i-1"))

        with pytest.raises(UpstreamStreamTerminated, match="mapper bug") as excinfo:
            agg.wait(WAIT)
        assert isinstance(excinfo.value.__cause__, RuntimeError)
        assert channel.subscriber_count == 0
        # Publishing keeps working for other subscribers
        channel.add(web_server("i-2"))

    def test_mid_stream_bad_record_keeps_others_visible(self):
        channel = NotificationChannel()
        agg = SnapshotAggregator(channel)
        agg.start()
        channel.add(web_server("i-1"))
        channel.add(web_server("i-bad", datacenter_info=BasicDataCenterInfo()))
        channel.add(web_server("i-2"))
        channel.complete()

        with pytest.raises(UpstreamStreamTerminated):
            agg.wait(WAIT)
        snap = agg.snapshot()
        assert {i.instance_id for i in snap.instances()} == {"i-1", "i-2"}
        assert snap.version == 3

    def test_wait_timeout(self):
        agg = SnapshotAggregator(NotificationChannel())
        agg.start()
        try:
            assert agg.wait(0.01) is False
        finally:
            agg.shutdown()

    def test_start_twice_rejected(self):
        agg = SnapshotAggregator(NotificationChannel())
        agg.start()
        try:
            with pytest.raises(RuntimeError):
                agg.start()
        finally:
            agg.shutdown()

    def test_shutdown_idempotent_and_closes_subscription(self):
        source = MagicMock()
        subscription = MagicMock()
        subscription.__iter__.return_value = iter([])
        source.subscribe.return_value = subscription
        agg = SnapshotAggregator(source)
        agg.shutdown()
        agg.shutdown()
        assert agg.wait(WAIT) is True
        source.subscribe.assert_not_called()

    def test_context_manager(self):
        channel = NotificationChannel()
        with SnapshotAggregator(channel) as agg:
            channel.add(web_server("i-1"))
            _wait_for(lambda: agg.snapshot().version == 1)
        assert agg.state is AggregatorState.TERMINATED

    def test_concurrent_readers_see_consistent_snapshots(self):
        channel = NotificationChannel()
        agg = SnapshotAggregator(channel, digest_batch_size=7)
        errors = []
        stop = threading.Event()

        def reader():
            while not stop.is_set():
                snap: RegistrySnapshot = agg.snapshot()
                indexed = set(snap.instance_index)
                grouped = {i.instance_id for i in snap.instances()}
                if indexed != grouped:
                    errors.append((snap.version, indexed ^ grouped))
                for group in snap.applications.values():
                    group.digest

        readers = [threading.Thread(target=reader) for _ in range(4)]
        for t in readers:
            t.start()
        agg.start()
        for n in range(200):
            channel.add(web_server(f"i-{n}", app=f"app-{n % 5}"))
            if n % 3 == 0:
                channel.delete(f"i-{n}")
        channel.complete()

        with pytest.raises(UpstreamStreamTerminated):
            agg.wait(WAIT)
        stop.set()
        for t in readers:
            t.join(WAIT)

        assert errors == []
        snap = agg.snapshot()
        assert snap.version == 200 + 67
        assert snap.total_instances == 200 - 67


def _wait_for(predicate, timeout=WAIT):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.005)
    raise AssertionError("condition not reached in time")
