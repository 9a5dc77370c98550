from fleet_rollout.engine import DeploymentEngine
from fleet_rollout.models import DeploymentConfig, DeploymentRequest, Fleet, Host
from fleet_rollout.prober import HealthProber
from fleet_rollout.simulation import SimulatedFleet


def make_fleet(hosts=2, workers=4, base_port=8000, name="prod"):
    return Fleet(name, [Host(f"10.0.0.{i + 1}", workers, base_port, "app") for i in range(hosts)])


def make_engine(fleet, installed="1.0.0", available=("1.0.0", "2.0.0"), failures=None, **config):
    sim = SimulatedFleet(fleet, installed_version=installed, available_versions=list(available), failures=failures)
    prober = HealthProber(transport=sim.transport())
    engine = DeploymentEngine(sim.controller, sim.installer, prober, DeploymentConfig(**config))
    return engine, sim


def make_request(fleet, version="2.0.0", **overrides):
    values = dict(health_check_timeout=1.0, max_retries=1, retry_delay=0)
    values.update(overrides)
    return DeploymentRequest("svc", version, fleet, **values)


def op_names(sim, host):
    return [op[0] for op in sim.operations(host)]
