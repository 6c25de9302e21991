"""Certificate material for routed hosts.

Two pairs may exist per host::

    <cert_dir>/<host>/{privkey,fullchain}.pem          certbot lineage (trusted)
    <self_signed_dir>/<host>/{privkey,fullchain}.pem   openssl placeholder

certbot refuses to create a lineage over a live directory it does not own, so
placeholders never go under ``cert_dir``. ``paths`` returns the trusted pair
when it exists and the placeholder otherwise; that is what nginx is pointed at.
"""
from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass
from threading import Lock
from typing import Iterable, Protocol

from . import db
from .errors import CertError, CommandError
from .process import Runner, run_command
from .runtime import validate_host
from .settings import Settings, settings as default_settings

ABSENT = "absent"
SELF_SIGNED = "self-signed"
TRUSTED = "trusted"


@dataclass(frozen=True)
class CertPaths:
    directory: str
    key: str
    fullchain: str

    def exist(self) -> bool:
        return os.path.isfile(self.key) and os.path.isfile(self.fullchain)


def _pair(base: str, host: str) -> CertPaths:
    directory = os.path.join(base, host)
    return CertPaths(
        directory=directory,
        key=os.path.join(directory, "privkey.pem"),
        fullchain=os.path.join(directory, "fullchain.pem"),
    )


class CertificateIssuer(Protocol):
    def paths(self, host: str) -> CertPaths: ...

    def ensure(self, host: str) -> bool: ...

    def acquire_trusted(self, hosts: Iterable[str]) -> bool: ...

    def state(self, host: str) -> str: ...

    def states(self, hosts: Iterable[str]) -> dict[str, str]: ...


def _fingerprint(path: str) -> str | None:
    try:
        with open(path, "rb") as f:
            return hashlib.sha256(f.read()).hexdigest()
    except OSError:
        return None


class CertificateManager:
    def __init__(self, cfg: Settings | None = None, runner: Runner = run_command):
        self.cfg = cfg or default_settings
        self.runner = runner
        self._issue_lock = Lock()

    def trusted_paths(self, host: str) -> CertPaths:
        validate_host(host)
        return _pair(self.cfg.cert_dir, host)

    def placeholder_paths(self, host: str) -> CertPaths:
        validate_host(host)
        return _pair(self.cfg.self_signed_dir, host)

    def paths(self, host: str) -> CertPaths:
        """The pair nginx should use for ``host``: trusted if present, else the placeholder."""
        trusted = self.trusted_paths(host)
        if trusted.exist():
            return trusted
        return self.placeholder_paths(host)

    def _timeout(self) -> float | None:
        return self.cfg.command_timeout_s or None

    def state(self, host: str) -> str:
        if self.trusted_paths(host).exist():
            return TRUSTED
        if self.placeholder_paths(host).exist():
            return SELF_SIGNED
        return ABSENT

    def states(self, hosts: Iterable[str]) -> dict[str, str]:
        return {h: self.state(h) for h in hosts}

    def ensure(self, host: str) -> bool:
        """Make sure a key/chain pair exists for ``host``.

        Returns True if a self-signed placeholder had to be generated.
        """
        try:
            if self.state(host) != ABSENT:
                return False
            p = self.placeholder_paths(host)
        except ValueError as e:
            raise CertError(str(e), host=host) from e

        try:
            os.makedirs(p.directory, exist_ok=True)
            self.runner(
                [
                    self.cfg.openssl_bin,
                    "req",
                    "-x509",
                    "-newkey",
                    "rsa:4096",
                    "-keyout",
                    p.key,
                    "-out",
                    p.fullchain,
                    "-days",
                    str(max(1, self.cfg.self_signed_days)),
                    "-nodes",
                    "-subj",
                    f"/CN={host}",
                ],
                timeout=self._timeout(),
            )
        except (OSError, CommandError) as e:
            raise CertError(f"Generating self-signed certificate failed: {e}", host=host) from e

        if not p.exist():
            raise CertError("Self-signed generator exited cleanly but left no key/chain pair", host=host)

        db.log_event("INFO", "Generated self-signed placeholder certificate", host=host)
        return True

    def _certbot_argv(self, host: str) -> list[str]:
        argv = [
            self.cfg.certbot_bin,
            "certonly",
            "--nginx",
            "--non-interactive",
            "--agree-tos",
            "--keep-until-expiring",
        ]
        if self.cfg.certbot_email:
            argv += ["--email", self.cfg.certbot_email]
        else:
            argv.append("--register-unsafely-without-email")
        argv += ["--cert-name", host, "--domains", host]
        return argv

    def acquire_trusted(self, hosts: Iterable[str]) -> bool:
        """Request trusted certificates, one certbot run per host.

        Returns True if any host's trusted chain changed on disk. A host that
        fails does not stop the others; failures are raised together at the
        end. Calls never overlap: a second caller waits for the first to finish.
        """
        hosts = list(dict.fromkeys(hosts))
        if not hosts:
            raise CertError("No hosts to request certificates for")

        changed = False
        failed: list[str] = []
        with self._issue_lock:
            for host in hosts:
                try:
                    p = self.trusted_paths(host)
                except ValueError as e:
                    db.log_event("ERROR", str(e), host=host)
                    failed.append(host)
                    continue
                before = _fingerprint(p.fullchain)
                try:
                    self.runner(self._certbot_argv(host), timeout=self._timeout())
                except CommandError as e:
                    db.log_event("ERROR", f"Trusted certificate request failed: {e}", host=host)
                    failed.append(host)
                    continue
                after = _fingerprint(p.fullchain)
                if after is not None and after != before:
                    changed = True
                    db.log_event("INFO", "Trusted certificate installed", host=host)

        if failed:
            raise CertError(f"Certificate request failed for {', '.join(failed)}", hosts=failed, changed=changed)
        return changed
