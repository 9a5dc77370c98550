import time
import uuid
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional

from .errors import InvalidTopology, DeploymentError, RollbackFailure

LATEST = "latest"  # resolved to the newest available version at install time

DEFAULT_HEALTH_CHECK_TIMEOUT = 5.0
DEFAULT_MAX_RETRIES = 5
DEFAULT_RETRY_DELAY = 3.0


class ProbeState(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    ERRORED = "errored"


class AttemptState(str, Enum):
    INIT = "init"
    PER_HOST_ROLLOUT = "per_host_rollout"
    AGGREGATING = "aggregating"
    ROLLING_BACK = "rolling_back"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


TERMINAL_STATES = frozenset({AttemptState.COMMITTED, AttemptState.ROLLED_BACK, AttemptState.FAILED})


@dataclass(frozen=True)
class Host:
    address: str
    worker_count: int
    base_port: int
    group: str
    credentials_ref: Optional[str] = None  # opaque, resolved by the transport layer
    user: Optional[str] = None

    def worker_port(self, index):
        return worker_port(self, index)

    def worker_indexes(self):
        return range(1, self.worker_count + 1)

    def worker_label(self, index):
        return f"{self.group}-{index:02d}"


def worker_port(host, index):
    """Port for worker ``index`` (1-based) on ``host``."""
    if not 1 <= index <= host.worker_count:
        raise InvalidTopology(f"{host.address}: worker index {index} outside 1..{host.worker_count}")
    return host.base_port + index


def validate_host(host):
    if not host.address:
        raise InvalidTopology("host address must not be empty")
    if not host.group:
        raise InvalidTopology(f"{host.address}: process group name must not be empty")
    if host.worker_count < 1:
        raise InvalidTopology(f"{host.address}: worker_count must be >= 1, got {host.worker_count}")
    if host.base_port < 0:
        raise InvalidTopology(f"{host.address}: base_port must not be negative, got {host.base_port}")
    if host.base_port + host.worker_count > 65535:
        raise InvalidTopology(f"{host.address}: worker ports exceed 65535")


@dataclass(frozen=True)
class Fleet:
    name: str
    hosts: tuple = ()

    def __post_init__(self):
        # callers often hand in a list; freeze it for the lifetime of the attempt
        object.__setattr__(self, "hosts", tuple(self.hosts))

    def validate(self):
        if not self.hosts:
            raise InvalidTopology(f"fleet {self.name!r} has no hosts")
        seen = set()
        for host in self.hosts:
            validate_host(host)
            if host.address in seen:
                raise InvalidTopology(f"fleet {self.name!r} lists host {host.address} twice")
            seen.add(host.address)

    @property
    def worker_total(self):
        return sum(h.worker_count for h in self.hosts)


@dataclass
class DeploymentRequest:
    package: str
    version: str
    fleet: Fleet
    health_check_timeout: float = DEFAULT_HEALTH_CHECK_TIMEOUT  # seconds per probe
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay: float = DEFAULT_RETRY_DELAY  # seconds between probes
    backup_enabled: bool = True

    def validate(self):
        if not self.package:
            raise ValueError("package must not be empty")
        if not self.version:
            raise ValueError("version must not be empty")
        if self.health_check_timeout <= 0:
            raise ValueError("health_check_timeout must be > 0")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.retry_delay < 0:
            raise ValueError("retry_delay must be >= 0")

    @property
    def pins_version(self):
        return self.version != LATEST


@dataclass
class DeploymentConfig:
    """Configuration handed to the engine when it is created"""
    health_check_timeout: float = DEFAULT_HEALTH_CHECK_TIMEOUT
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay: float = DEFAULT_RETRY_DELAY
    backup_enabled: bool = True
    max_parallel_hosts: int = 4  # How many hosts roll out at once
    operation_timeout_s: float = 600.0  # Bound on each stop/install/start call
    health_path: str = "/health"
    expected_status: int = 200

    def build_request(self, package, version, fleet, **overrides):
        values = dict(
            health_check_timeout=self.health_check_timeout,
            max_retries=self.max_retries,
            retry_delay=self.retry_delay,
            backup_enabled=self.backup_enabled,
        )
        values.update({k: v for k, v in overrides.items() if v is not None})
        return DeploymentRequest(package=package, version=version, fleet=fleet, **values)


@dataclass(frozen=True)
class BackupHandle:
    host: str
    version: Optional[str]
    location: str


@dataclass(frozen=True)
class BackupSkipped:
    host: str
    reason: str


@dataclass
class ProbeResult:
    worker_index: int
    port: int
    state: ProbeState = ProbeState.UNHEALTHY
    attempts: int = 0
    elapsed_s: float = 0.0
    last_status: Optional[int] = None
    last_latency_s: Optional[float] = None
    last_error: Optional[str] = None
    body_snippet: Optional[str] = None  # diagnostics only

    @property
    def healthy(self):
        return self.state == ProbeState.HEALTHY


@dataclass
class HostOutcome:
    host: str
    target_version: str
    steps: list = field(default_factory=list)  # Steps started, in order
    install_ok: bool = False
    start_ok: bool = False
    failed_step: Optional[str] = None
    error: Optional[str] = None
    backup: Optional[str] = None
    running_version: Optional[str] = None
    probes: list = field(default_factory=list)
    skipped: bool = False  # Never launched because the attempt was cancelled

    @property
    def host_healthy(self):
        return (self.install_ok and self.start_ok and bool(self.probes)
                and all(p.healthy for p in self.probes))

    @property
    def touched(self):
        return bool(self.steps)

    def fail(self, exc):
        self.failed_step = self.steps[-1] if self.steps else None
        self.error = f"{type(exc).__name__}: {exc}"

    def to_dict(self):
        data = asdict(self)
        data["host_healthy"] = self.host_healthy
        return data


@dataclass
class DeploymentAttempt:
    """One run of the orchestrator against a fleet"""
    request: DeploymentRequest
    attempt_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: AttemptState = AttemptState.INIT
    previous_version: Optional[str] = None
    outcomes: dict = field(default_factory=dict)  # host address -> HostOutcome
    rollback_outcomes: dict = field(default_factory=dict)
    final_versions: dict = field(default_factory=dict)  # host address -> version left running
    cancelled: bool = False
    error: Optional[str] = None
    history: list = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    def record(self, event, **data):
        entry = {"event": event, "state": self.state.value}
        entry.update(data)
        self.history.append(entry)

    def transition(self, state):
        self.state = state
        self.record("state", to=state.value)

    @property
    def terminal(self):
        return self.state in TERMINAL_STATES

    @property
    def fully_healthy(self):
        return bool(self.outcomes) and all(o.host_healthy for o in self.outcomes.values())

    def raise_for_state(self):
        if not self.terminal:
            raise DeploymentError(f"deployment {self.attempt_id} has not finished (state {self.state.value})")
        if self.state == AttemptState.COMMITTED:
            return
        if self.state == AttemptState.FAILED:
            raise RollbackFailure(self)
        if self.state == AttemptState.ROLLED_BACK:
            raise DeploymentError(f"deployment {self.attempt_id} rolled back to {self.previous_version}: {self.error}")

    def to_dict(self):
        return {
            "attempt_id": self.attempt_id,
            "fleet": self.request.fleet.name,
            "package": self.request.package,
            "requested_version": self.request.version,
            "previous_version": self.previous_version,
            "state": self.state.value,
            "terminal": self.terminal,
            "cancelled": self.cancelled,
            "error": self.error,
            "hosts": {addr: o.to_dict() for addr, o in self.outcomes.items()},
            "rollback": {addr: o.to_dict() for addr, o in self.rollback_outcomes.items()},
            "final_versions": dict(self.final_versions),
            "history": list(self.history),
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }
