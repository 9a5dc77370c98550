"""In-memory fleet used by ``deploy --simulate`` and by the test-suite.

``SimulatedFleet`` keeps per-host state (installed version, whether the
group is running, the ordered operations applied) and exposes it through
the same collaborator interfaces the SSH backends implement, plus an
``httpx.MockTransport`` that answers worker health checks from that state.
"""

import asyncio
from dataclasses import dataclass, field

import httpx

from .errors import InstallError, SupervisionError
from .installer import Installer
from .models import BackupHandle, BackupSkipped, LATEST
from .supervisor import ProcessController


class FailureInjector:
    """Decides which simulated operations fail.

    ``install_failures`` / ``start_failures`` map a host address to how many
    calls fail before the operation starts succeeding (-1 fails forever).
    ``unhealthy_workers`` maps an address to worker indexes that answer 503;
    ``unhealthy_versions`` makes every worker of every host unhealthy while a
    given version is installed.
    """

    def __init__(self, install_failures=None, start_failures=None, stop_failures=None,
                 backup_failures=None, unhealthy_workers=None, unhealthy_versions=None,
                 slow_workers=None, delay=0):
        self.install_failures = install_failures or {}
        self.start_failures = start_failures or {}
        self.stop_failures = stop_failures or {}
        self.backup_failures = set(backup_failures or ())
        self.unhealthy_workers = {k: set(v) for k, v in (unhealthy_workers or {}).items()}
        self.unhealthy_versions = set(unhealthy_versions or ())
        self.slow_workers = slow_workers or {}  # (address, index) -> failing probes before healthy
        self.delay = delay
        self.attempts = {}

    def delay_seconds(self):
        return self.delay

    def should_fail(self, operation, address):
        plan = {"install": self.install_failures, "start": self.start_failures,
                "stop": self.stop_failures}[operation]
        key = (operation, address)
        self.attempts[key] = self.attempts.get(key, 0) + 1
        budget = plan.get(address, 0)
        return budget < 0 or self.attempts[key] <= budget

    def worker_status(self, address, index, version):
        if version in self.unhealthy_versions:
            return 503
        if index in self.unhealthy_workers.get(address, ()):
            return 503
        key = (address, index)
        remaining = self.slow_workers.get(key, 0)
        if remaining > 0:
            self.slow_workers[key] = remaining - 1
            return 503
        return 200


@dataclass
class SimulatedHost:
    installed_version: str = None
    running: bool = False
    operations: list = field(default_factory=list)
    backups: list = field(default_factory=list)


class SimulatedFleet:
    def __init__(self, fleet, installed_version=None, available_versions=None, failures=None):
        self.fleet = fleet
        self.hosts = {h.address: SimulatedHost(installed_version, running=installed_version is not None)
                      for h in fleet.hosts}
        self.available_versions = list(available_versions or ([installed_version] if installed_version else []))
        self.failures = failures if failures else FailureInjector()
        self.probe_count = {}
        self.controller = SimulatedController(self)
        self.installer = SimulatedInstaller(self)

    def state(self, host):
        return self.hosts[getattr(host, "address", host)]

    def operations(self, host):
        return list(self.state(host).operations)

    def mutations(self):
        """Every state-changing operation applied to any host, in host order."""
        return [(addr, op) for addr, s in self.hosts.items() for op in s.operations
                if op[0] in ("stop", "start", "install", "reload", "backup")]

    def resolve(self, version):
        if version == LATEST:
            if not self.available_versions:
                return None
            return self.available_versions[-1]
        return version if version in self.available_versions else None

    async def pause(self):
        delay = self.failures.delay_seconds()
        if delay > 0:
            await asyncio.sleep(delay)

    def transport(self):
        return httpx.MockTransport(self._handle_probe)

    def _handle_probe(self, request):
        address, port = request.url.host, request.url.port
        host = next((h for h in self.fleet.hosts if h.address == address), None)
        if host is None:
            raise httpx.ConnectError(f"unknown host {address}", request=request)
        index = port - host.base_port
        key = (address, index)
        self.probe_count[key] = self.probe_count.get(key, 0) + 1
        state = self.hosts[address]
        if not state.running or not 1 <= index <= host.worker_count:
            raise httpx.ConnectError("connection refused", request=request)
        status = self.failures.worker_status(address, index, state.installed_version)
        return httpx.Response(status, text="ok" if status == 200 else "warming up")


class SimulatedController(ProcessController):
    def __init__(self, sim):
        self.sim = sim

    async def stop(self, host, group):
        await self.sim.pause()
        state = self.sim.state(host)
        state.operations.append(("stop", group))
        if self.sim.failures.should_fail("stop", host.address):
            raise SupervisionError(host.address, group, "supervisorctl refused to stop")
        state.running = False

    async def start(self, host, group):
        await self.sim.pause()
        state = self.sim.state(host)
        state.operations.append(("start", group))
        if self.sim.failures.should_fail("start", host.address):
            raise SupervisionError(host.address, group, "spawn error")
        state.running = True

    async def reload(self, host):
        self.sim.state(host).operations.append(("reload", host.group))


class SimulatedInstaller(Installer):
    def __init__(self, sim):
        self.sim = sim

    async def backup(self, host, version):
        state = self.sim.state(host)
        state.operations.append(("backup", version))
        if host.address in self.sim.failures.backup_failures:
            return BackupSkipped(host.address, "disk full")
        if version is None:
            return BackupSkipped(host.address, "nothing installed")
        location = f"/backups/{host.group}-{version}-{len(state.backups) + 1}"
        state.backups.append(location)
        return BackupHandle(host.address, version, location)

    async def install(self, host, package, version):
        await self.sim.pause()
        state = self.sim.state(host)
        state.operations.append(("install", version))
        if self.sim.failures.should_fail("install", host.address):
            raise InstallError(host.address, f"could not install {package} {version}")
        resolved = self.sim.resolve(version)
        if resolved is None:
            raise InstallError(host.address, f"no matching distribution for {package} {version}")
        state.installed_version = resolved

    async def installed_version(self, host, package):
        return self.sim.state(host).installed_version
