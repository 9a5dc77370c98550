class DeploymentError(Exception):
    """Base class for everything the rollout engine raises."""


class InvalidTopology(DeploymentError):
    pass


class InconsistentFleetVersion(DeploymentError):
    def __init__(self, versions, unreachable=None):
        self.versions = dict(versions)
        self.unreachable = dict(unreachable or {})
        if self.unreachable:
            hosts = ", ".join(f"{host} ({cause})" for host, cause in sorted(self.unreachable.items()))
            super().__init__(f"could not read installed version on {hosts}")
            return
        found = ", ".join(f"{host}={version}" for host, version in sorted(self.versions.items(), key=lambda kv: kv[0]))
        super().__init__(f"hosts disagree on installed version: {found}")


class AttemptInProgress(DeploymentError):
    def __init__(self, fleet):
        self.fleet = fleet
        super().__init__(f"a deployment attempt is already active for fleet {fleet!r}")


class SupervisionError(DeploymentError):
    def __init__(self, host, group, cause):
        self.host = host
        self.group = group
        self.cause = cause
        super().__init__(f"{host}: process group {group!r}: {cause}")


class InstallError(DeploymentError):
    def __init__(self, host, cause):
        self.host = host
        self.cause = cause
        super().__init__(f"{host}: {cause}")


class ProbeFailure(DeploymentError):
    """Raised by ``HealthProber.ensure_healthy`` when workers fail their probes."""

    def __init__(self, host, results):
        self.host = host
        self.results = list(results)
        failing = [r for r in self.results if not r.healthy]
        details = ", ".join(f"worker {r.worker_index} {r.state.value}" for r in failing)
        super().__init__(f"{host}: {len(failing)}/{len(self.results)} workers failing ({details})")


class RollbackFailure(DeploymentError):
    def __init__(self, attempt):
        self.attempt = attempt
        super().__init__(f"deployment {attempt.attempt_id} failed: {attempt.error}")


class CommandError(DeploymentError):
    """Remote command could not be executed at all (connection, transport, timeout)."""

    def __init__(self, host, command, cause):
        self.host = host
        self.command = command
        self.cause = cause
        super().__init__(f"{host}: {command!r}: {cause}")
