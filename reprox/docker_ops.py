from __future__ import annotations

from dataclasses import dataclass, field
from threading import Event, Lock
from typing import Any, Callable

import docker
from docker.errors import DockerException
from requests.exceptions import RequestException

from . import db
from .errors import DiscoveryError
from .runtime import Route, validate_host
from .settings import Settings, settings as default_settings

WATCHED_ACTIONS = {"start", "die", "stop", "destroy", "rename", "unpause", "pause"}


@dataclass(frozen=True)
class ContainerInfo:
    id: str
    name: str
    labels: dict[str, str] = field(default_factory=dict)


def _client() -> docker.DockerClient:
    return docker.from_env()


def _primary_name(raw: dict[str, Any]) -> str:
    names = raw.get("Names") or []
    if not names:
        return ""
    return str(names[0]).lstrip("/")


class DiscoveryClient:
    """Read-only view of the running containers that ask to be routed."""

    def __init__(self, client: docker.DockerClient | None = None, cfg: Settings | None = None):
        self.cfg = cfg or default_settings
        self.client = client if client is not None else _client()
        self._stream_lock = Lock()
        self._stream: Any = None

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except (DockerException, RequestException):
            return False

    def list_containers(self) -> list[ContainerInfo]:
        try:
            # low-level call: one request, no per-container inspect
            raw = self.client.api.containers(all=False)
        except (DockerException, RequestException) as e:
            raise DiscoveryError(f"Listing containers failed: {type(e).__name__}: {e}") from e
        return [
            ContainerInfo(id=str(x.get("Id", "")), name=_primary_name(x), labels=dict(x.get("Labels") or {}))
            for x in raw
        ]

    def discover(self) -> list[Route]:
        """One candidate route per container with a name and a non-empty host label, in list order."""
        routes: list[Route] = []
        for c in self.list_containers():
            host = (c.labels.get(self.cfg.host_label) or "").strip().lower()
            if not c.name or not host:
                continue
            try:
                validate_host(host)
            except ValueError as e:
                db.log_event("WARN", f"Ignoring container {c.name}: {e}")
                continue
            routes.append(Route(host=host, upstream=c.name))
        return routes

    def watch(self, on_change: Callable[[], None], stop: Event) -> None:
        """Block on the Docker event stream, calling ``on_change`` for container lifecycle events.

        Returns when ``stop`` is set and ``close_watch`` has been called, or when
        the stream ends. Stream errors raise DiscoveryError.
        """
        try:
            stream = self.client.events(decode=True, filters={"type": "container"})
        except (DockerException, RequestException) as e:
            raise DiscoveryError(f"Subscribing to container events failed: {e}") from e

        with self._stream_lock:
            self._stream = stream
        try:
            for ev in stream:
                if stop.is_set():
                    break
                if ev.get("Action") in WATCHED_ACTIONS:
                    on_change()
        except (DockerException, RequestException, OSError) as e:
            if not stop.is_set():
                raise DiscoveryError(f"Container event stream failed: {e}") from e
        finally:
            with self._stream_lock:
                self._stream = None

    def close_watch(self) -> None:
        with self._stream_lock:
            stream = self._stream
        if stream is not None and hasattr(stream, "close"):
            stream.close()

    def close(self) -> None:
        self.close_watch()
        try:
            self.client.close()
        except (DockerException, RequestException) as e:
            db.log_event("WARN", f"Closing Docker client failed: {e}")
