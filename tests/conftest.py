from __future__ import annotations

import os

import pytest
from docker.errors import DockerException

from reprox import db
from reprox.errors import CommandError
from reprox.process import CommandResult
from reprox.settings import Settings


@pytest.fixture(autouse=True)
def event_db(tmp_path, monkeypatch):
    """Isolated sqlite event log per test."""
    monkeypatch.setattr(db, "settings", Settings(db_path=str(tmp_path / "events.db")))
    db.init_db()
    yield


@pytest.fixture
def cfg(tmp_path) -> Settings:
    return Settings(
        db_path=str(tmp_path / "events.db"),
        cert_dir=str(tmp_path / "live"),
        self_signed_dir=str(tmp_path / "self-signed"),
        nginx_config=str(tmp_path / "conf.d" / "apps.conf"),
        certbot_email="ops@example.com",
        poll_interval_s=1,
        renew_initial_delay_s=0,
        renew_interval_s=3600,
        renew_retry_s=3600,
    )


def container(name: str, host: str | None, cid: str | None = None) -> dict:
    labels = {"reprox.host": host} if host is not None else {}
    return {"Id": cid or name.strip("/"), "Names": [name] if name else [], "Labels": labels}


class FakeDockerAPI:
    def __init__(self) -> None:
        self.items: list[dict] = []
        self.fail = False
        self.calls = 0

    def containers(self, all=False):
        self.calls += 1
        if self.fail:
            raise DockerException("connection refused")
        return [dict(x) for x in self.items]


class FakeDockerClient:
    def __init__(self) -> None:
        self.api = FakeDockerAPI()
        self.event_items: list[dict] = []
        self.closed = False

    def ping(self):
        return True

    def events(self, decode=True, filters=None):
        return iter(self.event_items)

    def close(self):
        self.closed = True


@pytest.fixture
def docker_client() -> FakeDockerClient:
    return FakeDockerClient()


class FakeProxy:
    def __init__(self, cfg: Settings | None = None) -> None:
        self.cfg = cfg
        self.calls: list[str] = []
        self.fail_on: set[str] = set()
        # certificate files referenced by the config at each reload
        self.missing_at_reload: list[str] = []

    def _call(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail_on:
            raise CommandError(["nginx", name], "nginx: [emerg] boom", "exit status 1")

    def start(self) -> None:
        self._call("start")

    def reload(self) -> None:
        self._call("reload")
        if self.cfg is not None and os.path.exists(self.cfg.nginx_config):
            with open(self.cfg.nginx_config) as f:
                for line in f:
                    line = line.strip()
                    if line.startswith("ssl_certificate"):
                        path = line.split()[1].rstrip(";")
                        if not os.path.exists(path):
                            self.missing_at_reload.append(path)

    def stop(self) -> None:
        self.calls.append("stop")


@pytest.fixture
def proxy(cfg) -> FakeProxy:
    return FakeProxy(cfg)


class FakeRunner:
    """Stands in for run_command: openssl writes a pair, certbot succeeds or fails per host."""

    def __init__(self) -> None:
        self.commands: list[list[str]] = []
        self.certbot_fails: set[str] = set()
        self.certbot_always_fails = False
        self.openssl_fails = False
        self.issued: dict[str, int] = {}

    def __call__(self, argv: list[str], timeout: float | None = None, capture: bool = True) -> CommandResult:
        self.commands.append(list(argv))
        if argv[0] == "openssl":
            if self.openssl_fails:
                raise CommandError(argv, "unable to write key", "exit status 1")
            key = argv[argv.index("-keyout") + 1]
            out = argv[argv.index("-out") + 1]
            subj = argv[argv.index("-subj") + 1]
            with open(key, "w") as f:
                f.write("KEY\n")
            with open(out, "w") as f:
                f.write(f"SELF-SIGNED {subj}\n")
            return CommandResult(argv, 0, "")
        if argv[0] == "certbot":
            host = argv[argv.index("--cert-name") + 1]
            if self.certbot_always_fails or host in self.certbot_fails:
                raise CommandError(argv, "Challenge failed for domain " + host, "exit status 1")
            cert_dir = self.cert_dir
            os.makedirs(os.path.join(cert_dir, host), exist_ok=True)
            self.issued[host] = self.issued.get(host, 0) + 1
            with open(os.path.join(cert_dir, host, "fullchain.pem"), "w") as f:
                f.write(f"TRUSTED {host} #{self.issued[host]}\n")
            with open(os.path.join(cert_dir, host, "privkey.pem"), "w") as f:
                f.write("TRUSTED KEY\n")
            return CommandResult(argv, 0, "Successfully received certificate.")
        return CommandResult(argv, 0, "")


@pytest.fixture
def runner(cfg) -> FakeRunner:
    r = FakeRunner()
    r.cert_dir = cfg.cert_dir
    return r
