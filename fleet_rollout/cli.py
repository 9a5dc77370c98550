import argparse
import json
import asyncio
import signal
import sys
from dataclasses import fields
from .models import AttemptState, DeploymentConfig, Fleet, Host, LATEST
from .engine import DeploymentEngine
from .errors import DeploymentError, ProbeFailure
from .installer import VenvInstaller
from .prober import HealthProber
from .remote import SSHRunner
from .report import render_text
from .simulation import FailureInjector, SimulatedFleet
from .supervisor import SupervisorController
from .logger import setup_logging, get_logger

EXIT_CODES = {
    AttemptState.COMMITTED: 0,
    AttemptState.ROLLED_BACK: 1,
    AttemptState.FAILED: 2,
}


def load_fleet(path, environment):
    logger = get_logger("cli")
    with open(path) as f:
        data = json.load(f)
    try:
        envs = data["environments"]
        hosts = envs[environment]["hosts"]
    except KeyError:
        logger.error(f"Environment {environment!r} not found in {path}")
        raise ValueError(f"unknown environment {environment!r}") from None
    fleet = Fleet(
        name=f"{data.get('name', 'fleet')}/{environment}",
        hosts=[
            Host(
                address=h["address"],
                worker_count=int(h["worker_count"]),
                base_port=int(h["base_port"]),
                group=h["group"],
                credentials_ref=h.get("credentials_ref"),
                user=h.get("user"),
            )
            for h in hosts
        ],
    )
    fleet.validate()
    return fleet


def load_config(path):
    if not path:
        return DeploymentConfig()
    with open(path) as f:
        data = json.load(f)
    known = {f.name for f in fields(DeploymentConfig)}
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"unknown configuration keys: {', '.join(sorted(unknown))}")
    return DeploymentConfig(**data)


def parse_worker(spec):
    """'ADDRESS:INDEX' as used by --simulate-unhealthy; the address may be IPv6"""
    address, _, index = spec.rpartition(":")
    if not address:
        raise ValueError(f"expected ADDRESS:INDEX, got {spec!r}")
    return address, int(index)


def build_check_prober(fleet, config, args):
    if args.simulate:
        unhealthy = {}
        for address, index in map(parse_worker, args.simulate_unhealthy or ()):
            unhealthy.setdefault(address, set()).add(index)
        sim = SimulatedFleet(fleet, installed_version="1.0.0", failures=FailureInjector(unhealthy_workers=unhealthy))
        return HealthProber(config.health_path, config.expected_status, transport=sim.transport())
    return HealthProber(config.health_path, config.expected_status)


def build_engine(fleet, config, args):
    if args.simulate:
        failures = FailureInjector(install_failures={a: -1 for a in args.simulate_fail_install or ()})
        sim = SimulatedFleet(
            fleet,
            installed_version=args.simulate_version,
            available_versions=[args.simulate_version] + ([args.version] if args.version != LATEST else []),
            failures=failures,
        )
        if args.version == LATEST:
            sim.available_versions.append(f"{args.simulate_version}.post1")
        prober = HealthProber(config.health_path, config.expected_status, transport=sim.transport())
        return DeploymentEngine(sim.controller, sim.installer, prober, config)

    timeout = config.operation_timeout_s
    runner = SSHRunner(command_timeout=timeout)
    return DeploymentEngine(
        SupervisorController(runner, timeout=timeout),
        VenvInstaller(runner, index_url=args.index_url, timeout=timeout),
        HealthProber(config.health_path, config.expected_status),
        config,
    )


async def run_deploy(engine, request):
    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, cancel.set)
        except (NotImplementedError, RuntimeError):
            pass  # no signal handlers off the main thread or on Windows
    return await engine.deploy(request, cancel_event=cancel)


async def run_check(prober, fleet, config, args):
    failed = 0
    for host in fleet.hosts:
        try:
            results = await prober.ensure_healthy(
                host, args.timeout or config.health_check_timeout,
                config.max_retries if args.retries is None else args.retries,
                config.retry_delay if args.delay is None else args.delay,
            )
        except ProbeFailure as e:
            failed += 1
            results = e.results
            print(f"{host.address}: {e}")
        for r in results:
            print(f"  {host.worker_label(r.worker_index)} :{r.port} {r.state.value} status={r.last_status}")
    return failed


def main():
    parser = argparse.ArgumentParser(prog="fleet-rollout", description="Rolling deployments with health gating")
    parser.add_argument("--log-level", default="INFO")
    sub = parser.add_subparsers(dest="cmd", required=True)

    deploy = sub.add_parser("deploy")
    deploy.add_argument("--fleet", required=True)
    deploy.add_argument("--environment", required=True)
    deploy.add_argument("--package", required=True)
    deploy.add_argument("--version", default=LATEST)
    deploy.add_argument("--retries", type=int)
    deploy.add_argument("--delay", type=float)
    deploy.add_argument("--timeout", type=float)
    deploy.add_argument("--no-backup", action="store_true")
    deploy.add_argument("--parallel", type=int)
    deploy.add_argument("--config")
    deploy.add_argument("--index-url")
    deploy.add_argument("--report")
    deploy.add_argument("--simulate", action="store_true")
    deploy.add_argument("--simulate-version", default="1.0.0")
    deploy.add_argument("--simulate-fail-install", action="append")

    check = sub.add_parser("check")
    check.add_argument("--fleet", required=True)
    check.add_argument("--environment", required=True)
    check.add_argument("--retries", type=int)
    check.add_argument("--delay", type=float)
    check.add_argument("--timeout", type=float)
    check.add_argument("--config")
    check.add_argument("--simulate", action="store_true")
    check.add_argument("--simulate-unhealthy", action="append", metavar="ADDRESS:INDEX")

    ports = sub.add_parser("ports")
    ports.add_argument("--fleet", required=True)
    ports.add_argument("--environment", required=True)

    args = parser.parse_args()
    setup_logging(args.log_level)

    try:
        fleet = load_fleet(args.fleet, args.environment)
        config = load_config(getattr(args, "config", None))
    except (OSError, ValueError, KeyError, TypeError, DeploymentError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    if args.cmd == "ports":
        for host in fleet.hosts:
            for i in host.worker_indexes():
                print(f"{host.address} {host.worker_label(i)} {host.worker_port(i)}")
        return

    if args.cmd == "check":
        try:
            prober = build_check_prober(fleet, config, args)
        except ValueError as e:
            print(f"Error: {e}")
            sys.exit(1)
        failed = asyncio.run(run_check(prober, fleet, config, args))
        sys.exit(1 if failed else 0)

    if args.cmd == "deploy":
        if args.parallel is not None:
            config.max_parallel_hosts = args.parallel
        try:
            request = config.build_request(
                args.package, args.version, fleet,
                health_check_timeout=args.timeout,
                max_retries=args.retries,
                retry_delay=args.delay,
                backup_enabled=False if args.no_backup else None,
            )
            engine = build_engine(fleet, config, args)
            attempt = asyncio.run(run_deploy(engine, request))
        except (ValueError, DeploymentError) as e:
            print(f"Error: {e}")
            sys.exit(1)

        report = attempt.to_dict()
        print(render_text(attempt), file=sys.stderr)
        print(json.dumps(report, indent=2, default=str))
        if args.report:
            with open(args.report, "w") as f:
                json.dump(report, f, indent=2, default=str)
        sys.exit(EXIT_CODES[attempt.state])


if __name__ == "__main__":
    main()
