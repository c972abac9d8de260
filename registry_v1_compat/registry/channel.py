"""In-process notification channel that a v2 registry pushes change events into."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Iterator

from .interest import Interest, InterestKind
from .models import ChangeKind, ChangeNotification, InstanceInfo

logger = logging.getLogger(__name__)

_CLOSED = object()


class _End:
    """Terminal marker queued after the last notification."""

    def __init__(self, error: BaseException | None = None):
        self.error = error


class ChannelSubscription:
    """Queue-backed iterator over the notifications of one interest.

    Tracks which instance ids it has delivered so that identity-only deletes,
    and modifies that move an instance out of the interest, are translated
    into deletes for this subscriber.
    """

    def __init__(self, channel: NotificationChannel, interest: Interest):
        self.interest = interest
        self._channel = channel
        self._queue: queue.Queue = queue.Queue()
        self._known_ids: set[str] = set()
        self._closed = False

    def _offer(self, notification: ChangeNotification) -> None:
        """Called by the channel under its lock; never blocks."""
        instance_id = notification.instance_id

        if notification.kind is ChangeKind.DELETE:
            if instance_id in self._known_ids or self.interest.kind is InterestKind.FULL:
                self._known_ids.discard(instance_id)
                self._queue.put(notification)
            return

        if self.interest.matches(notification.data):
            self._known_ids.add(instance_id)
            self._queue.put(notification)
        elif instance_id in self._known_ids:
            self._known_ids.discard(instance_id)
            self._queue.put(ChangeNotification.delete(instance_id))

    def _end(self, error: BaseException | None) -> None:
        self._queue.put(_End(error))

    def __iter__(self) -> Iterator[ChangeNotification]:
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                return
            if isinstance(item, _End):
                if item.error is not None:
                    raise item.error
                return
            yield item

    def drain(self, max_items: int) -> list[ChangeNotification]:
        """Return up to max_items already-queued notifications without blocking.

        Stops at a terminal marker and leaves it queued for the iterator.
        """
        drained: list[ChangeNotification] = []
        while len(drained) < max_items:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            if item is _CLOSED or isinstance(item, _End):
                # Terminal markers are always last, so re-queueing keeps the order
                self._queue.put(item)
                break
            drained.append(item)
        return drained

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._channel._detach(self)
        self._queue.put(_CLOSED)


class NotificationChannel:
    """Thread-safe, replaying notification source.

    The channel keeps the latest record of every live instance (deletes drop it),
    and a new subscriber first receives an add for each live record matching its
    interest, then live events. Once completed or failed, the channel rejects
    further publishing and new subscribers see the live records followed by the
    same terminal outcome.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._live: dict[str, InstanceInfo] = {}
        self._subscribers: list[ChannelSubscription] = []
        self._terminal: _End | None = None

    # ── Publishing ──────────────────────────────────────────────────

    def publish(self, notification: ChangeNotification) -> None:
        with self._lock:
            if self._terminal is not None:
                raise RuntimeError("Cannot publish to a terminated notification channel")
            if notification.kind is ChangeKind.DELETE:
                self._live.pop(notification.instance_id, None)
            else:
                self._live[notification.instance_id] = notification.data
            for sub in self._subscribers:
                sub._offer(notification)

    def add(self, info: InstanceInfo) -> None:
        self.publish(ChangeNotification.add(info))

    def modify(self, info: InstanceInfo) -> None:
        self.publish(ChangeNotification.modify(info))

    def delete(self, instance_id: str) -> None:
        self.publish(ChangeNotification.delete(instance_id))

    def complete(self) -> None:
        """End the stream normally for all subscribers."""
        self._terminate(_End())

    def fail(self, error: BaseException) -> None:
        """End the stream with an error for all subscribers."""
        self._terminate(_End(error))

    def _terminate(self, end: _End) -> None:
        with self._lock:
            if self._terminal is not None:
                return
            self._terminal = end
            subscribers, self._subscribers = self._subscribers, []
        logger.debug("Notification channel terminated (error=%s)", end.error)
        for sub in subscribers:
            sub._end(end.error)

    # ── Subscribing ─────────────────────────────────────────────────

    def subscribe(self, interest: Interest) -> ChannelSubscription:
        sub = ChannelSubscription(self, interest)
        with self._lock:
            for info in self._live.values():
                sub._offer(ChangeNotification.add(info))
            replayed = len(self._live)
            if self._terminal is not None:
                sub._end(self._terminal.error)
            else:
                self._subscribers.append(sub)
        logger.debug("New subscription for %s (%d live records replayed)", interest, replayed)
        return sub

    def _detach(self, sub: ChannelSubscription) -> None:
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)
