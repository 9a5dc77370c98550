import json
import pytest
from fleet_rollout.errors import DeploymentError
from fleet_rollout.models import AttemptState, DeploymentAttempt, ProbeState, LATEST
from fleet_rollout.simulation import FailureInjector
from fleet_rollout.report import render_text
from tests.helpers import make_fleet, make_engine, make_request, op_names


class TestBasicDeployment:
    """Forward rollouts that end committed."""

    @pytest.mark.asyncio
    async def test_two_hosts_four_workers_commit(self):
        fleet = make_fleet(hosts=2, workers=4, base_port=8000)
        engine, sim = make_engine(fleet)

        attempt = await engine.deploy(make_request(fleet, "2.0.0"))
        assert attempt.state == AttemptState.COMMITTED
        assert attempt.previous_version == "1.0.0"

        probes = [p for o in attempt.outcomes.values() for p in o.probes]
        assert len(probes) == 8
        assert all(p.state == ProbeState.HEALTHY for p in probes)
        assert sorted(p.port for p in probes) == [8001, 8001, 8002, 8002, 8003, 8003, 8004, 8004]
        for host in fleet.hosts:
            assert sim.state(host).installed_version == "2.0.0"
            assert sim.state(host).running is True
            assert attempt.final_versions[host.address] == "2.0.0"
        assert attempt.rollback_outcomes == {}
        attempt.raise_for_state()

    @pytest.mark.asyncio
    async def test_first_attempt_success_consumes_one_probe(self):
        fleet = make_fleet(hosts=1, workers=3)
        engine, sim = make_engine(fleet)

        attempt = await engine.deploy(make_request(fleet, max_retries=5))
        outcome = attempt.outcomes["10.0.0.1"]
        assert [p.attempts for p in outcome.probes] == [1, 1, 1]
        assert all(count == 1 for count in sim.probe_count.values())

    @pytest.mark.asyncio
    async def test_steps_run_in_order_on_each_host(self):
        fleet = make_fleet(hosts=3, workers=2)
        engine, sim = make_engine(fleet)

        attempt = await engine.deploy(make_request(fleet))
        for host in fleet.hosts:
            assert op_names(sim, host) == ["stop", "backup", "install", "reload", "start"]
            assert attempt.outcomes[host.address].steps == ["stop", "backup", "install", "reload", "start", "probe"]

    @pytest.mark.asyncio
    async def test_backup_records_previous_version(self):
        fleet = make_fleet(hosts=1, workers=1)
        engine, sim = make_engine(fleet)

        attempt = await engine.deploy(make_request(fleet))
        assert ("backup", "1.0.0") in sim.operations("10.0.0.1")
        assert attempt.outcomes["10.0.0.1"].backup == "/backups/app-1.0.0-1"

    @pytest.mark.asyncio
    async def test_backup_disabled_skips_backup_step(self):
        fleet = make_fleet(hosts=1, workers=1)
        engine, sim = make_engine(fleet)

        attempt = await engine.deploy(make_request(fleet, backup_enabled=False))
        assert attempt.state == AttemptState.COMMITTED
        assert "backup" not in op_names(sim, "10.0.0.1")
        assert attempt.outcomes["10.0.0.1"].backup is None

    @pytest.mark.asyncio
    async def test_latest_resolves_to_newest_available(self):
        fleet = make_fleet(hosts=2, workers=1)
        engine, sim = make_engine(fleet, available=("1.0.0", "1.5.0", "2.1.0"))

        attempt = await engine.deploy(make_request(fleet, LATEST))
        assert attempt.state == AttemptState.COMMITTED
        for outcome in attempt.outcomes.values():
            assert outcome.running_version == "2.1.0"
        assert set(attempt.final_versions.values()) == {"2.1.0"}

    @pytest.mark.asyncio
    async def test_workers_warming_up_within_retry_budget_commit(self):
        fleet = make_fleet(hosts=2, workers=4)
        slow = {("10.0.0.1", 2): 1, ("10.0.0.2", 4): 1}
        engine, sim = make_engine(fleet, failures=FailureInjector(slow_workers=slow))

        attempt = await engine.deploy(make_request(fleet, max_retries=1))
        assert attempt.state == AttemptState.COMMITTED
        assert attempt.outcomes["10.0.0.1"].probes[1].attempts == 2
        assert attempt.outcomes["10.0.0.2"].probes[3].attempts == 2

    @pytest.mark.asyncio
    async def test_redeploying_same_version_commits(self):
        fleet = make_fleet(hosts=1, workers=2)
        engine, sim = make_engine(fleet)

        attempt = await engine.deploy(make_request(fleet, "1.0.0"))
        assert attempt.state == AttemptState.COMMITTED
        assert attempt.previous_version == "1.0.0"

    @pytest.mark.asyncio
    async def test_history_walks_through_states(self):
        fleet = make_fleet(hosts=1, workers=1)
        engine, _ = make_engine(fleet)

        attempt = await engine.deploy(make_request(fleet))
        states = [h["to"] for h in attempt.history if h["event"] == "state"]
        assert states == ["per_host_rollout", "aggregating", "committed"]
        assert attempt.history[0]["event"] == "init"
        assert attempt.finished_at is not None
        assert attempt.terminal is True

    @pytest.mark.asyncio
    async def test_report_is_json_serializable_and_readable(self):
        fleet = make_fleet(hosts=2, workers=2)
        engine, _ = make_engine(fleet)

        attempt = await engine.deploy(make_request(fleet))
        data = json.loads(json.dumps(attempt.to_dict(), default=str))
        assert data["state"] == "committed"
        assert data["terminal"] is True
        assert data["hosts"]["10.0.0.1"]["host_healthy"] is True
        assert data["hosts"]["10.0.0.2"]["probes"][1]["state"] == "healthy"

        text = render_text(attempt)
        assert "COMMITTED" in text
        assert "app-02 :8002 healthy" in text
        assert "running=2.0.0" in text

    def test_unfinished_attempt_is_not_terminal(self):
        attempt = DeploymentAttempt(request=make_request(make_fleet(hosts=1, workers=1)))
        attempt.transition(AttemptState.PER_HOST_ROLLOUT)

        assert attempt.terminal is False
        assert attempt.to_dict()["terminal"] is False
        with pytest.raises(DeploymentError, match="has not finished"):
            attempt.raise_for_state()
