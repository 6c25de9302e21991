from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
from threading import Event, Thread

import requests
from docker.errors import DockerException

from . import db
from .certs import CertificateManager
from .docker_ops import DiscoveryClient
from .errors import CommandError
from .process import NginxSupervisor
from .reconciler import Reconciler
from .runtime import RuntimeState
from .settings import settings

logger = logging.getLogger("reprox")


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _setup_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _serve_api(reconciler: Reconciler):
    import uvicorn

    from .app import create_app

    config = uvicorn.Config(
        create_app(reconciler), host=settings.api_host, port=settings.api_port, log_level="warning"
    )
    server = uvicorn.Server(config)
    # uvicorn leaves signal handling to the main thread when it runs elsewhere
    Thread(target=server.run, name="reprox-api", daemon=True).start()
    logger.info("Status API listening on http://%s:%s", settings.api_host, settings.api_port)
    return server


def run(once: bool = False) -> int:
    _setup_logging()
    db.init_db()

    try:
        discovery = DiscoveryClient()
    except DockerException as e:
        db.log_event("ERROR", f"Docker client could not be initialised: {e}")
        return 1

    reconciler = Reconciler(
        runtime=RuntimeState(),
        discovery=discovery,
        certs=CertificateManager(),
        proxy=NginxSupervisor(),
    )

    if once:
        # expects nginx to be running already
        result = reconciler.reconcile_once()
        discovery.close()
        return 1 if result.error else 0

    stop = Event()

    def _handle(signum, _frame) -> None:
        logger.info("Received %s", signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGTERM, _handle)
    signal.signal(signal.SIGINT, _handle)

    try:
        reconciler.start()
    except CommandError:
        discovery.close()
        return 1

    server = _serve_api(reconciler) if settings.api_port else None
    stop.wait()

    if server is not None:
        server.should_exit = True
    reconciler.stop()
    discovery.close()
    return 0


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(prog="reprox", description="nginx + certbot edge controller for labelled containers")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_run = sub.add_parser("run", help="Run the controller in the foreground")
    s_run.add_argument("--once", action="store_true", help="Run a single reconciliation cycle and exit")

    default_api = f"http://{settings.api_host}:{settings.api_port or 8080}"
    for name, help_text in (
        ("routes", "Show the applied route table"),
        ("certs", "Show certificate state per host"),
        ("events", "Show recent events"),
        ("health", "Show controller state"),
    ):
        s = sub.add_parser(name, help=help_text)
        s.add_argument("--api", default=default_api, help="Status API base URL")
        if name == "events":
            s.add_argument("--limit", type=int, default=20)

    args = p.parse_args(argv)

    if args.cmd == "run":
        return run(once=args.once)

    base = args.api.rstrip("/")
    path = {"routes": "/routes", "certs": "/certificates", "events": "/events", "health": "/health"}[args.cmd]
    params = {"limit": args.limit} if args.cmd == "events" else None
    try:
        r = requests.get(f"{base}{path}", params=params, timeout=10)
    except requests.RequestException as e:
        print(f"reprox: cannot reach {base}: {e}", file=sys.stderr)
        return 1
    _print(r.json())
    return 0 if r.ok else 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
