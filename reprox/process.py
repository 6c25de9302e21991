from __future__ import annotations

import subprocess
from dataclasses import dataclass
from typing import Callable, Protocol

from . import db
from .errors import CommandError
from .settings import Settings, settings as default_settings


@dataclass(frozen=True)
class CommandResult:
    command: list[str]
    returncode: int
    output: str


Runner = Callable[..., CommandResult]


def run_command(argv: list[str], timeout: float | None = None, capture: bool = True) -> CommandResult:
    """Run ``argv`` and capture stdout+stderr as one stream.

    With ``capture=False`` the child inherits our stdio and ``output`` is empty.
    Raises CommandError on a non-zero exit, a missing binary or a timeout.
    """
    try:
        proc = subprocess.run(
            argv,
            stdout=subprocess.PIPE if capture else None,
            stderr=subprocess.STDOUT if capture else None,
            text=True,
            timeout=timeout or None,
            check=False,
        )
    except FileNotFoundError as e:
        raise CommandError(argv, "", e) from e
    except subprocess.TimeoutExpired as e:
        out = e.output or ""
        if isinstance(out, bytes):
            out = out.decode(errors="replace")
        raise CommandError(argv, out, f"timed out after {timeout}s") from e

    if proc.returncode != 0:
        raise CommandError(argv, proc.stdout or "", f"exit status {proc.returncode}")
    return CommandResult(command=list(argv), returncode=proc.returncode, output=proc.stdout or "")


class ProxySupervisor(Protocol):
    def start(self) -> None: ...

    def reload(self) -> None: ...

    def stop(self) -> None: ...


class NginxSupervisor:
    """Drives the nginx daemon through its command line signals."""

    def __init__(self, cfg: Settings | None = None, runner: Runner = run_command):
        self.cfg = cfg or default_settings
        self.runner = runner

    def _run(self, *args: str, capture: bool = True) -> CommandResult:
        timeout = self.cfg.command_timeout_s or None
        return self.runner([self.cfg.nginx_bin, *args], timeout=timeout, capture=capture)

    def start(self) -> None:
        # bare `nginx` daemonizes; the daemon may keep stderr open, so it is not piped
        self._run(capture=False)
        db.log_event("INFO", "nginx started")

    def reload(self) -> None:
        self._run("-s", "reload")
        db.log_event("INFO", "nginx reloaded")

    def stop(self) -> None:
        try:
            self._run("-s", "stop")
            db.log_event("INFO", "nginx stopped")
        except CommandError as e:
            db.log_event("ERROR", f"Stopping nginx failed: {e}")
