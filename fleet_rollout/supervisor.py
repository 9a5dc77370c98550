import shlex
from abc import ABC, abstractmethod

from .errors import CommandError, SupervisionError
from .logger import get_logger


class ProcessController(ABC):
    """Stops, starts and reloads a named process group on a host."""

    @abstractmethod
    async def stop(self, host, group):
        """Stop every process in ``group``. Stopping a stopped group succeeds."""

    @abstractmethod
    async def start(self, host, group):
        """Start every process in ``group``."""

    @abstractmethod
    async def reload(self, host):
        """Pick up changed process definitions."""


# supervisorctl prints these for operations that are already satisfied
_ALREADY_STOPPED = ("not running", "already stopped")
_ALREADY_STARTED = ("already started",)


class SupervisorController(ProcessController):
    def __init__(self, runner, supervisorctl="supervisorctl", use_sudo=True, timeout=120.0):
        self.runner = runner
        self.supervisorctl = supervisorctl
        self.use_sudo = use_sudo
        self.timeout = timeout
        self.logger = get_logger("supervisor")

    def command(self, *args):
        parts = [self.supervisorctl] + [shlex.quote(a) for a in args]
        if self.use_sudo:
            parts = ["sudo", "-n"] + parts
        return " ".join(parts)

    async def _ctl(self, host, group, *args):
        try:
            return await self.runner.run(host, self.command(*args), timeout=self.timeout)
        except CommandError as e:
            raise SupervisionError(host.address, group, e.cause) from e

    async def stop(self, host, group):
        result = await self._ctl(host, group, "stop", f"{group}:*")
        if not result.ok and not _mentions(result.output, _ALREADY_STOPPED):
            raise SupervisionError(host.address, group, result.output or f"exit status {result.exit_status}")
        self.logger.info(f"Stopped {group} on {host.address}")

    async def start(self, host, group):
        result = await self._ctl(host, group, "start", f"{group}:*")
        if not result.ok and not _mentions(result.output, _ALREADY_STARTED):
            raise SupervisionError(host.address, group, result.output or f"exit status {result.exit_status}")
        self.logger.info(f"Started {group} on {host.address}")

    async def reload(self, host):
        for action in ("reread", "update"):
            result = await self._ctl(host, host.group, action)
            if not result.ok:
                raise SupervisionError(host.address, host.group, f"{action}: {result.output}")
        self.logger.debug(f"Reloaded supervisor configuration on {host.address}")


def _mentions(output, phrases):
    lowered = output.lower()
    return any(p in lowered for p in phrases)
