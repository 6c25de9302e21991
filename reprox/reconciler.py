from __future__ import annotations

import os
from dataclasses import dataclass, field
from threading import Event, Lock, Thread
from typing import Callable, Mapping, Sequence

from . import db
from .certs import CertificateIssuer, CertPaths
from .docker_ops import DiscoveryClient
from .errors import CertError, CommandError, ReproxError, WriteError
from .process import ProxySupervisor
from .render import render, write_config
from .runtime import Route, RuntimeState, build_routes, routes_changed
from .settings import Settings, settings as default_settings

# seconds to wait before re-subscribing to a broken Docker event stream
WATCH_RETRY_S = 5


@dataclass
class CycleResult:
    changed: bool = False
    applied: bool = False
    routes: tuple[Route, ...] = ()
    skipped_hosts: list[str] = field(default_factory=list)
    error: str | None = None


class Reconciler:
    """Keeps nginx config and certificates in line with the routed containers.

    Two timelines run in their own threads: the reconciliation loop
    (discover -> diff -> ensure certs -> render -> write -> reload) and the
    trusted certificate sweep. Both go through ``_apply_lock`` before touching
    the config file or reloading nginx.
    """

    def __init__(
        self,
        runtime: RuntimeState,
        discovery: DiscoveryClient,
        certs: CertificateIssuer,
        proxy: ProxySupervisor,
        cfg: Settings | None = None,
        renderer: Callable[[Sequence[Route], Mapping[str, CertPaths]], str] = render,
        writer: Callable[[str, str], None] = write_config,
    ):
        self.runtime = runtime
        self.discovery = discovery
        self.certs = certs
        self.proxy = proxy
        self.cfg = cfg or default_settings
        self.renderer = renderer
        self.writer = writer
        self._stop = Event()
        self._wake = Event()
        self._apply_lock = Lock()
        self._threads: list[Thread] = []
        # validate early so a bad setting fails at startup rather than every cycle
        build_routes([], self.cfg.duplicate_policy)

    @property
    def lifecycle(self) -> str:
        return self.runtime.lifecycle

    # Lifecycle

    def start(self) -> None:
        """Start nginx and the worker threads. Raises CommandError if nginx cannot start."""
        self.runtime.set_lifecycle("starting")
        try:
            self.proxy.start()
        except CommandError as e:
            db.log_event("ERROR", f"nginx failed to start: {e}")
            self.runtime.set_lifecycle("stopped")
            raise

        self.runtime.set_lifecycle("running")
        self._spawn(self._loop, "reprox-reconcile")
        self._spawn(self._renew_loop, "reprox-renew")
        if self.cfg.watch_events:
            self._spawn(self._watch_loop, "reprox-watch")

    def _spawn(self, target: Callable[[], None], name: str) -> None:
        thr = Thread(target=target, name=name, daemon=True)
        self._threads.append(thr)
        thr.start()

    def stop(self) -> None:
        """Stop timers, let the running cycle finish, then stop nginx."""
        if self.runtime.lifecycle in {"stopping", "stopped"}:
            return
        self.runtime.set_lifecycle("stopping")
        db.log_event("INFO", "Shutting down")
        self._stop.set()
        self._wake.set()
        self.discovery.close_watch()
        for thr in self._threads:
            if thr.name == "reprox-watch":
                thr.join(timeout=WATCH_RETRY_S)
            else:
                thr.join()
        self._threads.clear()
        self.proxy.stop()
        self.runtime.set_lifecycle("stopped")

    def trigger(self) -> None:
        """Run the next reconciliation cycle now instead of at the next interval."""
        self._wake.set()

    # Loops

    def _loop(self) -> None:
        db.log_event("INFO", "Reconciler started")
        while not self._stop.is_set():
            try:
                self.reconcile_once()
            except Exception as e:
                db.log_event("ERROR", f"Reconciler tick failed: {type(e).__name__}: {e}")
            self._wake.wait(max(1, self.cfg.poll_interval_s))
            self._wake.clear()

    def _renew_loop(self) -> None:
        delay = self.cfg.renew_initial_delay_s
        while not self._stop.wait(max(0, delay)):
            try:
                ok = self.renew_certificates()
            except Exception as e:
                db.log_event("ERROR", f"Certificate sweep failed: {type(e).__name__}: {e}")
                ok = False
            delay = self.cfg.renew_interval_s if ok else self.cfg.renew_retry_s

    def _watch_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.discovery.watch(self.trigger, self._stop)
            except Exception as e:
                db.log_event("WARN", f"Container event watch interrupted: {type(e).__name__}: {e}")
            self._stop.wait(WATCH_RETRY_S)

    # Work

    def reconcile_once(self) -> CycleResult:
        result = CycleResult()
        try:
            self._reconcile(result)
        except ReproxError as e:
            result.error = str(e)
            db.log_event("ERROR", f"Reconciliation cycle aborted: {e}")
        self.runtime.mark_cycle(result.error)
        return result

    def _reconcile(self, result: CycleResult) -> None:
        # DiscoveryError propagates: the cycle is skipped and the old table stays
        table = build_routes(self.discovery.discover(), self.cfg.duplicate_policy)
        changed, version = self.runtime.differs(table)
        if not changed:
            return
        result.changed = True

        with self._apply_lock:
            ready = self._ensure_certificates(table, result)
            current = self.runtime.snapshot()
            if current.version == version and not routes_changed(current.routes, ready):
                # only hosts whose certificates failed differ; nothing new to apply
                result.routes = current.routes
                return

            self._apply(ready)
            self.runtime.commit(ready, expected_version=version)

        result.applied = True
        result.routes = tuple(ready)
        db.log_event("INFO", f"Applied {len(ready)} route(s): {', '.join(r.host for r in ready) or '-'}")

        if ready:
            self.renew_certificates()

    def _ensure_certificates(self, table: Sequence[Route], result: CycleResult) -> list[Route]:
        """Return the routes whose certificate files exist, generating placeholders where needed."""
        ready: list[Route] = []
        for route in table:
            try:
                self.certs.ensure(route.host)
            except CertError as e:
                db.log_event("ERROR", f"Leaving host out of config this cycle: {e}", host=route.host)
                result.skipped_hosts.append(route.host)
                continue
            ready.append(route)
        return ready

    def _apply(self, routes: Sequence[Route]) -> None:
        """Render, write and reload. Caller holds ``_apply_lock``.

        If nginx rejects the new file, the previous one is put back so the file
        on disk keeps matching what nginx is running.
        """
        cert_paths = {r.host: self.certs.paths(r.host) for r in routes}
        text = self.renderer(routes, cert_paths)
        previous = self._read_config()
        self.writer(self.cfg.nginx_config, text)
        try:
            self.proxy.reload()
        except CommandError:
            self._restore_config(previous)
            raise

    def _read_config(self) -> str | None:
        try:
            with open(self.cfg.nginx_config) as f:
                return f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise WriteError(f"Cannot read current config {self.cfg.nginx_config}: {e}") from e

    def _restore_config(self, previous: str | None) -> None:
        try:
            if previous is None:
                os.remove(self.cfg.nginx_config)
            else:
                self.writer(self.cfg.nginx_config, previous)
        except FileNotFoundError:
            pass
        except (OSError, WriteError) as e:
            db.log_event("ERROR", f"Could not restore the last applied config: {e}")
            return
        db.log_event("WARN", "Reload rejected; restored the last applied config")

    def renew_certificates(self) -> bool:
        """Request trusted certificates for every routed host, reloading nginx if material changed.

        Returns False when the sweep should be retried soon.
        """
        hosts = self.runtime.snapshot().hosts
        if not hosts:
            db.log_event("INFO", "No routed hosts; skipping certificate sweep")
            return True

        ok = True
        try:
            changed = self.certs.acquire_trusted(hosts)
        except CertError as e:
            db.log_event("WARN", f"Certificate sweep incomplete, self-signed fallback stays in place: {e}")
            changed = e.changed
            ok = False

        if changed:
            # re-render so hosts leaving their placeholder point at the new lineage
            with self._apply_lock:
                try:
                    self._apply(self.runtime.snapshot().routes)
                except ReproxError as e:
                    db.log_event("ERROR", f"Reload after certificate change failed: {e}")
                    ok = False
        return ok
