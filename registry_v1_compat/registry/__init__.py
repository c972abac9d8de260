"""v2 registry side: notification source Protocols."""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterator, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .interest import Interest
    from .models import ChangeNotification


@runtime_checkable
class Subscription(Protocol):
    """A live, possibly infinite stream of change notifications for one interest."""

    def __iter__(self) -> Iterator[ChangeNotification]:
        ...

    def drain(self, max_items: int) -> list[ChangeNotification]:
        """Return up to max_items notifications that are already available, without blocking."""
        ...

    def close(self) -> None:
        """Release the upstream subscription; iteration ends promptly afterwards."""
        ...


@runtime_checkable
class NotificationSource(Protocol):
    """Protocol that every v2 registry notification source must satisfy."""

    def subscribe(self, interest: Interest) -> Subscription:
        """Return a stream of add/modify/delete notifications matching the interest."""
        ...
