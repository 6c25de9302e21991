from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from threading import Lock
from typing import Iterable, Sequence

from . import db

DUPLICATE_POLICIES = ("last", "first")


def utc_now() -> str:
    return datetime.utcnow().strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class Route:
    host: str
    upstream: str

    def __post_init__(self) -> None:
        if not self.host:
            raise ValueError("Route host must be non-empty.")
        if not self.upstream:
            raise ValueError("Route upstream must be non-empty.")


@dataclass(frozen=True)
class RouteSnapshot:
    version: int
    routes: tuple[Route, ...]
    updated_at: str | None = None

    @property
    def hosts(self) -> list[str]:
        return [r.host for r in self.routes]


def build_routes(candidates: Iterable[Route], policy: str = "last") -> tuple[Route, ...]:
    """Collapse candidates into a table with unique hosts.

    ``last``: the last-discovered upstream for a host wins; the route keeps the
    position where the host first appeared. ``first``: the first one wins.
    """
    if policy not in DUPLICATE_POLICIES:
        raise ValueError(f"Unknown duplicate policy {policy!r}; expected one of {DUPLICATE_POLICIES}.")

    by_host: dict[str, Route] = {}
    for route in candidates:
        prev = by_host.get(route.host)
        if prev is None:
            by_host[route.host] = route
            continue
        if policy == "last":
            by_host[route.host] = route
            kept, dropped = route, prev
        else:
            kept, dropped = prev, route
        if kept != dropped:
            db.log_event(
                "WARN",
                f"Duplicate host: keeping upstream '{kept.upstream}', ignoring '{dropped.upstream}' ({policy} wins)",
                host=route.host,
            )
    # dicts keep first-insertion order even when a value is replaced
    return tuple(by_host.values())


def routes_changed(old: Sequence[Route], new: Sequence[Route]) -> bool:
    if len(old) != len(new):
        return True
    return any(a != b for a, b in zip(old, new))


class RuntimeState:
    """Owns the applied route table.

    The table only changes through ``commit``; everyone else gets an immutable
    ``RouteSnapshot``.
    """

    def __init__(self) -> None:
        self.lock = Lock()
        self._routes: tuple[Route, ...] = ()
        self._version = 0
        self._updated_at: str | None = None
        self.lifecycle = "starting"  # starting|running|stopping|stopped
        self.last_cycle_at: str | None = None
        self.last_error: str | None = None

    def snapshot(self) -> RouteSnapshot:
        with self.lock:
            return RouteSnapshot(version=self._version, routes=self._routes, updated_at=self._updated_at)

    def differs(self, candidate: Sequence[Route]) -> tuple[bool, int]:
        """Compare ``candidate`` against the applied table.

        Returns (changed, version the comparison was made against).
        """
        with self.lock:
            return routes_changed(self._routes, candidate), self._version

    def commit(self, routes: Sequence[Route], expected_version: int | None = None) -> bool:
        """Atomically replace the table. Refuses if another commit happened since ``expected_version``."""
        with self.lock:
            if expected_version is not None and expected_version != self._version:
                return False
            self._routes = tuple(routes)
            self._version += 1
            self._updated_at = utc_now()
            return True

    def set_lifecycle(self, state: str) -> None:
        with self.lock:
            self.lifecycle = state

    def mark_cycle(self, error: str | None) -> None:
        with self.lock:
            self.last_cycle_at = utc_now()
            self.last_error = error


HOST_RE = re.compile(
    r"^(?=.{1,253}$)[a-z0-9](?:[a-z0-9\-]{0,61}[a-z0-9])?(?:\.[a-z0-9](?:[a-z0-9\-]{0,61}[a-z0-9])?)*$"
)


def validate_host(host: str) -> None:
    # Hosts end up in filesystem paths and in the nginx config.
    if not HOST_RE.match(host):
        raise ValueError(f"Invalid hostname {host!r}.")
