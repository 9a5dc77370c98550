import pytest
from fleet_rollout.models import Host, Fleet, worker_port, validate_host, DeploymentRequest, DeploymentConfig, LATEST
from fleet_rollout.errors import InvalidTopology


def test_worker_ports_are_base_plus_index():
    host = Host("10.0.0.1", worker_count=4, base_port=8000, group="app")
    ports = [worker_port(host, i) for i in host.worker_indexes()]
    assert ports == [8001, 8002, 8003, 8004]


def test_worker_label_is_zero_padded_but_port_is_not():
    host = Host("10.0.0.1", worker_count=12, base_port=9000, group="api")
    assert host.worker_label(3) == "api-03"
    assert host.worker_port(3) == 9003
    assert host.worker_port(12) == 9012


def test_worker_index_out_of_range():
    host = Host("10.0.0.1", worker_count=2, base_port=8000, group="app")
    with pytest.raises(InvalidTopology):
        worker_port(host, 0)
    with pytest.raises(InvalidTopology):
        worker_port(host, 3)


def test_rejects_zero_workers():
    with pytest.raises(InvalidTopology):
        validate_host(Host("10.0.0.1", worker_count=0, base_port=8000, group="app"))


def test_rejects_negative_base_port():
    with pytest.raises(InvalidTopology):
        validate_host(Host("10.0.0.1", worker_count=1, base_port=-1, group="app"))


def test_base_port_zero_is_allowed():
    validate_host(Host("10.0.0.1", worker_count=1, base_port=0, group="app"))


def test_empty_fleet_is_invalid():
    with pytest.raises(InvalidTopology):
        Fleet("prod", []).validate()


def test_duplicate_hosts_are_invalid():
    host = Host("10.0.0.1", worker_count=1, base_port=8000, group="app")
    with pytest.raises(InvalidTopology):
        Fleet("prod", [host, host]).validate()


def test_fleet_hosts_are_frozen():
    fleet = Fleet("prod", [Host("a", 2, 8000, "app"), Host("b", 3, 8000, "app")])
    assert isinstance(fleet.hosts, tuple)
    assert fleet.worker_total == 5
    with pytest.raises(AttributeError):
        fleet.hosts[0].worker_count = 10


class TestRequestValidation:
    """DeploymentRequest field checks."""

    def _fleet(self):
        return Fleet("prod", [Host("a", 1, 8000, "app")])

    def test_defaults_come_from_config(self):
        cfg = DeploymentConfig(max_retries=7, retry_delay=0.5, backup_enabled=False)
        req = cfg.build_request("svc", LATEST, self._fleet())
        assert req.max_retries == 7
        assert req.retry_delay == 0.5
        assert req.backup_enabled is False
        assert req.pins_version is False

    def test_overrides_replace_config_values(self):
        cfg = DeploymentConfig(max_retries=7)
        req = cfg.build_request("svc", "2.0", self._fleet(), max_retries=1, retry_delay=None)
        assert req.max_retries == 1
        assert req.retry_delay == cfg.retry_delay
        assert req.pins_version is True

    @pytest.mark.parametrize("changes", [
        {"package": ""},
        {"version": ""},
        {"health_check_timeout": 0},
        {"max_retries": -1},
        {"retry_delay": -0.1},
    ])
    def test_invalid_fields(self, changes):
        values = dict(package="svc", version="1.0", fleet=self._fleet())
        values.update(changes)
        with pytest.raises(ValueError):
            DeploymentRequest(**values).validate()

    def test_zero_delay_and_zero_retries_are_legal(self):
        DeploymentRequest("svc", "1.0", self._fleet(), max_retries=0, retry_delay=0).validate()
