import shlex
import time
from abc import ABC, abstractmethod

from .errors import CommandError, InstallError
from .logger import get_logger
from .models import BackupHandle, BackupSkipped, LATEST


class Installer(ABC):
    """Installs a versioned package into a host's isolated runtime environment."""

    @abstractmethod
    async def backup(self, host, version):
        """Snapshot the current installation.

        Returns a BackupHandle, or BackupSkipped when no snapshot was taken.
        Must not raise: a missing backup never blocks a rollout.
        """

    @abstractmethod
    async def install(self, host, package, version):
        """Install or upgrade ``package``; ``version`` may be ``LATEST``."""

    @abstractmethod
    async def installed_version(self, host, package):
        """Version currently installed, or None. Works while the group is stopped."""


def requirement(package, version):
    return package if version == LATEST else f"{package}=={version}"


class VenvInstaller(Installer):
    """pip inside a per-group virtualenv, driven over SSH."""

    def __init__(self, runner, venv_template="/opt/venvs/{group}", index_url=None,
                 use_sudo=True, timeout=600.0):
        self.runner = runner
        self.venv_template = venv_template
        self.index_url = index_url
        self.use_sudo = use_sudo
        self.timeout = timeout
        self.logger = get_logger("installer")

    def venv(self, host):
        return self.venv_template.format(group=host.group)

    def _sudo(self, command):
        return f"sudo -n {command}" if self.use_sudo else command

    def pip(self, host, *args):
        pip = shlex.quote(f"{self.venv(host)}/bin/pip")
        return self._sudo(" ".join([pip] + [shlex.quote(a) for a in args]))

    async def backup(self, host, version):
        if version is None:
            return BackupSkipped(host.address, "nothing installed")
        venv = self.venv(host)
        target = f"{venv}.backup-{version}-{time.strftime('%Y%m%d%H%M%S')}"
        command = self._sudo(f"cp -a {shlex.quote(venv)} {shlex.quote(target)}")
        try:
            result = await self.runner.run(host, command, timeout=self.timeout)
        except CommandError as e:
            return BackupSkipped(host.address, e.cause)
        if not result.ok:
            return BackupSkipped(host.address, result.output or f"exit status {result.exit_status}")
        return BackupHandle(host.address, version, target)

    async def install(self, host, package, version):
        args = ["install", "--upgrade", "--quiet"]
        if self.index_url:
            args += ["--index-url", self.index_url]
        args.append(requirement(package, version))
        try:
            result = await self.runner.run(host, self.pip(host, *args), timeout=self.timeout)
        except CommandError as e:
            raise InstallError(host.address, e.cause) from e
        if not result.ok:
            raise InstallError(host.address, result.output or f"pip exited with {result.exit_status}")
        self.logger.info(f"Installed {requirement(package, version)} on {host.address}")

    async def installed_version(self, host, package):
        try:
            result = await self.runner.run(host, self.pip(host, "show", package), timeout=self.timeout)
        except CommandError as e:
            raise InstallError(host.address, e.cause) from e
        if not result.ok:
            # pip show exits 1 for packages that are not installed
            return None
        return parse_pip_show(result.stdout)


def parse_pip_show(text):
    for line in text.splitlines():
        key, _, value = line.partition(":")
        if key.strip().lower() == "version":
            return value.strip() or None
    return None
