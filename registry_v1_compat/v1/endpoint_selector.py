"""Picks the single plain and single secure port a v1 client expects per instance."""

from __future__ import annotations

from typing import Iterable

from ..registry.models import ServicePort

DEFAULT_PORT = 80
DEFAULT_SECURE_PORT = 443


def _matching(endpoints: Iterable[ServicePort] | None, secure: bool) -> list[int]:
    return sorted(ep.port for ep in (endpoints or ()) if ep.secure == secure)


def select_port(endpoints: Iterable[ServicePort] | None, secure: bool) -> int:
    """Return the lowest port among endpoints with the requested secure flag.

    Falls back to 80 (plain) or 443 (secure) when nothing matches, since v1
    records always carry both ports.
    """
    ports = _matching(endpoints, secure)
    if ports:
        return ports[0]
    return DEFAULT_SECURE_PORT if secure else DEFAULT_PORT


def has_port(endpoints: Iterable[ServicePort] | None, secure: bool) -> bool:
    """True when at least one endpoint carries the requested secure flag."""
    return bool(_matching(endpoints, secure))
