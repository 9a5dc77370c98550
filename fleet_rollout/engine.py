import asyncio
import time
from .models import (
    AttemptState, BackupHandle, DeploymentAttempt, DeploymentConfig, HostOutcome, LATEST
)
from .errors import (
    AttemptInProgress, InconsistentFleetVersion, InstallError, SupervisionError
)
from .prober import HealthProber
from .logger import get_logger


class DeploymentEngine:
    def __init__(self, controller, installer, prober=None, config=None):
        self.config = config if config else DeploymentConfig()
        self.controller = controller
        self.installer = installer
        self.prober = prober if prober else HealthProber(
            path=self.config.health_path, expected_status=self.config.expected_status
        )
        self.logger = get_logger("engine")
        self._active_fleets = set()
        self._active_hosts = set()

    def _acquire(self, fleet):
        """Claim the fleet and its hosts; must run before the first await of an attempt"""
        addresses = {h.address for h in fleet.hosts}
        busy = addresses & self._active_hosts
        if fleet.name in self._active_fleets or busy:
            self.logger.error(f"Rejecting attempt on {fleet.name}: another attempt is active")
            raise AttemptInProgress(fleet.name)
        self._active_fleets.add(fleet.name)
        self._active_hosts |= addresses
        return addresses

    def _release(self, fleet, addresses):
        self._active_fleets.discard(fleet.name)
        self._active_hosts -= addresses
        self.logger.debug(f"Fleet lock released for {fleet.name}")

    def is_active(self, fleet):
        return fleet.name in self._active_fleets

    async def _call(self, coro, on_timeout):
        """Await a collaborator call, bounded by operation_timeout_s.

        On expiry ``wait_for`` cancels the call and waits for it to unwind,
        so a collaborator that cleans up on cancellation (``SSHRunner.run``
        joins its thread) is finished before the host sees its next step.
        """
        timeout = self.config.operation_timeout_s
        if timeout and timeout > 0:
            try:
                return await asyncio.wait_for(coro, timeout=timeout)
            except asyncio.TimeoutError:
                raise on_timeout(f"timed out after {timeout}s") from None
        return await coro

    async def _read_versions(self, hosts, package):
        """Installed version per host address; an unreadable host maps to its InstallError"""
        async def read(host):
            try:
                return await self._call(
                    self.installer.installed_version(host, package),
                    lambda cause: InstallError(host.address, cause),
                )
            except InstallError as e:
                self.logger.warning(f"Could not read installed version on {host.address}: {e.cause}")
                return e

        versions = await asyncio.gather(*(read(h) for h in hosts))
        return {h.address: v for h, v in zip(hosts, versions)}

    async def _capture_previous_version(self, fleet, package):
        by_host = await self._read_versions(fleet.hosts, package)
        unreachable = {a: v.cause for a, v in by_host.items() if isinstance(v, InstallError)}
        if unreachable:
            readable = {a: v for a, v in by_host.items() if a not in unreachable}
            raise InconsistentFleetVersion(readable, unreachable)
        distinct = set(by_host.values())
        if len(distinct) > 1:
            raise InconsistentFleetVersion(by_host)
        return distinct.pop()

    async def _backup(self, host, version, outcome):
        result = await self.installer.backup(host, version)
        if isinstance(result, BackupHandle):
            outcome.backup = result.location
            self.logger.info(f"Backed up {host.address} ({version}) to {result.location}")
        else:
            outcome.backup = f"skipped: {result.reason}"
            self.logger.warning(f"Backup skipped on {host.address}: {result.reason}")

    async def _roll_host(self, host, version, request, backup_version=None, backup=False):
        """Drive one host through stop, install, start and probing.

        Used for both the forward rollout and the rollback; the steps run
        strictly in order and a failing step ends the host's sequence.
        """
        outcome = HostOutcome(host=host.address, target_version=version)
        supervision = lambda cause: SupervisionError(host.address, host.group, cause)
        installing = lambda cause: InstallError(host.address, cause)

        try:
            outcome.steps.append("stop")
            await self._call(self.controller.stop(host, host.group), supervision)

            if backup:
                outcome.steps.append("backup")
                await self._backup(host, backup_version, outcome)

            outcome.steps.append("install")
            await self._call(self.installer.install(host, request.package, version), installing)
            outcome.running_version = await self._call(
                self.installer.installed_version(host, request.package), installing
            )
            if outcome.running_version is None:
                raise InstallError(host.address, f"{request.package} not found after install")
            if version != LATEST and outcome.running_version != version:
                raise InstallError(host.address, f"expected {version}, found {outcome.running_version}")
            outcome.install_ok = True

            outcome.steps.append("reload")
            await self._call(self.controller.reload(host), supervision)
            outcome.steps.append("start")
            await self._call(self.controller.start(host, host.group), supervision)
            outcome.start_ok = True
        except (SupervisionError, InstallError) as e:
            # nothing is running to probe
            outcome.fail(e)
            self.logger.error(f"Host {host.address} failed at {outcome.failed_step}: {e}")
            return outcome
        except Exception as e:
            return self._unexpected(host, outcome, e)

        outcome.steps.append("probe")
        try:
            outcome.probes = await self.prober.check_host(
                host, request.health_check_timeout, request.max_retries, request.retry_delay
            )
        except Exception as e:
            return self._unexpected(host, outcome, e)
        healthy = sum(1 for p in outcome.probes if p.healthy)
        if outcome.host_healthy:
            self.logger.info(f"Host {host.address} healthy on {outcome.running_version} ({healthy}/{host.worker_count} workers)")
        else:
            outcome.failed_step = "probe"
            outcome.error = f"{host.worker_count - healthy}/{host.worker_count} workers failed health checks"
            self.logger.error(f"Host {host.address}: {outcome.error}")
        return outcome

    def _unexpected(self, host, outcome, exc):
        outcome.fail(exc)
        self.logger.exception(f"Host {host.address} failed at {outcome.failed_step} with an unexpected error")
        return outcome

    async def _fan_out(self, hosts, work, version, cancel_event=None):
        """Run ``work`` per host with bounded concurrency; None marks a host never launched.

        Every host task is joined before this returns. A task that raised
        anyway becomes a failed outcome, counted as touched.
        """
        semaphore = asyncio.Semaphore(max(1, self.config.max_parallel_hosts))

        async def guarded(host):
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    self.logger.warning(f"Cancelled before rollout of {host.address}")
                    return None
                return await work(host)

        results = await asyncio.gather(*(guarded(h) for h in hosts), return_exceptions=True)
        for i, (host, result) in enumerate(zip(hosts, results)):
            if isinstance(result, BaseException):
                self.logger.error(f"Host {host.address} task crashed: {result!r}")
                outcome = HostOutcome(host=host.address, target_version=version, steps=["rollout"])
                outcome.fail(result)
                results[i] = outcome
        return results

    async def _rollout(self, attempt, cancel_event):
        request = attempt.request
        fleet = request.fleet
        attempt.transition(AttemptState.PER_HOST_ROLLOUT)
        self.logger.info(f"Rolling out {request.package} {request.version} to {len(fleet.hosts)} hosts "
                         f"({self.config.max_parallel_hosts} at a time)")

        async def forward(host):
            attempt.record("host_start", host=host.address)
            return await self._roll_host(host, request.version, request,
                                         backup_version=attempt.previous_version,
                                         backup=request.backup_enabled)

        results = await self._fan_out(fleet.hosts, forward, request.version, cancel_event)
        for host, outcome in zip(fleet.hosts, results):
            if outcome is None:
                outcome = HostOutcome(host=host.address, target_version=request.version, skipped=True,
                                      error="cancelled before rollout")
            attempt.outcomes[host.address] = outcome
            attempt.record("host_done", host=host.address, healthy=outcome.host_healthy,
                           failed_step=outcome.failed_step)
        attempt.cancelled = bool(cancel_event is not None and cancel_event.is_set())

    async def _rollback(self, attempt):
        request = attempt.request
        previous = attempt.previous_version
        touched = [h for h in request.fleet.hosts if attempt.outcomes[h.address].touched]
        attempt.transition(AttemptState.ROLLING_BACK)
        self.logger.warning(f"Rolling back {len(touched)} hosts to {previous}")

        async def reverse(host):
            attempt.record("rollback_start", host=host.address)
            return await self._roll_host(host, previous, request)

        # rollback runs once per host and is not subject to cancellation
        results = await self._fan_out(touched, reverse, previous)
        for host, outcome in zip(touched, results):
            attempt.rollback_outcomes[host.address] = outcome
            attempt.record("rollback_done", host=host.address, healthy=outcome.host_healthy,
                           failed_step=outcome.failed_step)
        return all(o.host_healthy for o in attempt.rollback_outcomes.values())

    def _failure_summary(self, attempt):
        failing = [o for o in attempt.outcomes.values() if not o.host_healthy]
        return "; ".join(f"{o.host}: {o.error}" for o in failing)

    async def _record_final_versions(self, attempt):
        hosts = attempt.request.fleet.hosts
        versions = await self._read_versions(hosts, attempt.request.package)
        attempt.final_versions = {a: None if isinstance(v, InstallError) else v for a, v in versions.items()}

    async def deploy(self, request, cancel_event=None):
        """Main deployment method - roll a version out across the fleet"""
        fleet = request.fleet
        request.validate()
        fleet.validate()
        addresses = self._acquire(fleet)

        attempt = DeploymentAttempt(request=request)
        self.logger.info(f"Starting attempt {attempt.attempt_id}: {request.package} {request.version} "
                         f"on fleet {fleet.name}")
        try:
            attempt.previous_version = await self._capture_previous_version(fleet, request.package)
            attempt.record("init", previous_version=attempt.previous_version)
            self.logger.info(f"Fleet {fleet.name} currently runs {attempt.previous_version}")

            await self._rollout(attempt, cancel_event)

            attempt.transition(AttemptState.AGGREGATING)
            if attempt.fully_healthy:
                attempt.transition(AttemptState.COMMITTED)
                self.logger.info(f"SUCCESS: {request.package} {request.version} committed on "
                                 f"{len(fleet.hosts)} hosts, {fleet.worker_total} workers")
            else:
                attempt.error = self._failure_summary(attempt)
                self.logger.error(f"DEPLOYMENT FAILED: {attempt.error}")
                if attempt.previous_version is None:
                    attempt.error = f"{attempt.error}; no previous version to roll back to"
                    attempt.transition(AttemptState.FAILED)
                elif await self._rollback(attempt):
                    attempt.transition(AttemptState.ROLLED_BACK)
                    self.logger.warning(f"Rolled back to {attempt.previous_version}")
                else:
                    failing = [o for o in attempt.rollback_outcomes.values() if not o.host_healthy]
                    attempt.error = f"{attempt.error}; rollback failed on " + ", ".join(
                        f"{o.host} ({o.error})" for o in failing)
                    attempt.transition(AttemptState.FAILED)
                    self.logger.error("ROLLBACK FAILED: fleet needs manual intervention")

            await self._record_final_versions(attempt)
            attempt.finished_at = time.time()
            return attempt
        finally:
            self._release(fleet, addresses)
