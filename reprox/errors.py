from __future__ import annotations


class ReproxError(Exception):
    """Base error. ``stage`` names the pipeline step that failed."""

    stage = "reprox"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"[{self.stage}] {self.message}"


class DiscoveryError(ReproxError):
    stage = "discovery"


class CertError(ReproxError):
    stage = "certificate"

    def __init__(
        self, message: str, host: str | None = None, hosts: list[str] | None = None, changed: bool = False
    ):
        super().__init__(message)
        self.host = host
        # set when other hosts in the same run did get new material
        self.changed = changed
        self.hosts = list(hosts or ([host] if host else []))


class RenderError(ReproxError):
    stage = "render"


class WriteError(ReproxError):
    stage = "write"


class CommandError(ReproxError):
    """A subprocess exited non-zero, was missing, or timed out."""

    stage = "command"

    def __init__(self, command: list[str], output: str = "", cause: BaseException | str | None = None):
        self.command = list(command)
        self.output = output
        self.cause = cause
        msg = f"{' '.join(self.command)} failed: {cause}"
        if output.strip():
            msg += f"\n{output.strip()}"
        super().__init__(msg)
