from .models import (
    LATEST, AttemptState, ProbeState, Host, Fleet, worker_port, validate_host,
    DeploymentRequest, DeploymentConfig, DeploymentAttempt, HostOutcome, ProbeResult,
    BackupHandle, BackupSkipped
)
from .errors import (
    DeploymentError, InvalidTopology, InconsistentFleetVersion, AttemptInProgress,
    SupervisionError, InstallError, ProbeFailure, RollbackFailure, CommandError
)
from .engine import DeploymentEngine
from .prober import HealthProber
from .supervisor import ProcessController, SupervisorController
from .installer import Installer, VenvInstaller
from .remote import SSHRunner
from .simulation import FailureInjector, SimulatedFleet

__all__ = [
    "LATEST", "AttemptState", "ProbeState", "Host", "Fleet", "worker_port", "validate_host",
    "DeploymentRequest", "DeploymentConfig", "DeploymentAttempt", "HostOutcome", "ProbeResult",
    "BackupHandle", "BackupSkipped",
    "DeploymentError", "InvalidTopology", "InconsistentFleetVersion", "AttemptInProgress",
    "SupervisionError", "InstallError", "ProbeFailure", "RollbackFailure", "CommandError",
    "DeploymentEngine", "HealthProber",
    "ProcessController", "SupervisorController", "Installer", "VenvInstaller", "SSHRunner",
    "FailureInjector", "SimulatedFleet"
]
