def _latency(probe):
    if probe.last_latency_s is None:
        return "-"
    return f"{probe.last_latency_s * 1000:.0f}ms"


def _host_lines(outcome, fleet_hosts, final_version):
    host = fleet_hosts.get(outcome.host)
    status = "healthy" if outcome.host_healthy else ("skipped" if outcome.skipped else "FAILED")
    lines = [f"  {outcome.host} [{status}] running={final_version or '-'}"]
    if outcome.error:
        lines.append(f"    error ({outcome.failed_step or '-'}): {outcome.error}")
    if outcome.backup:
        lines.append(f"    backup: {outcome.backup}")
    for probe in outcome.probes:
        label = host.worker_label(probe.worker_index) if host else str(probe.worker_index)
        detail = probe.last_status if probe.last_status is not None else probe.last_error
        lines.append(f"    {label} :{probe.port} {probe.state.value} "
                     f"attempts={probe.attempts} last={detail} latency={_latency(probe)}")
    return lines


def render_text(attempt):
    """Per-host, per-worker summary of a finished attempt."""
    request = attempt.request
    hosts = {h.address: h for h in request.fleet.hosts}
    lines = [
        f"Deployment {attempt.attempt_id}: {request.package} {request.version} on {request.fleet.name}",
        f"State: {attempt.state.value.upper()} (previous version: {attempt.previous_version or 'unknown'})",
    ]
    if attempt.cancelled:
        lines.append("Cancelled by operator")
    if attempt.error:
        lines.append(f"Error: {attempt.error}")
    lines.append("Rollout:")
    for outcome in attempt.outcomes.values():
        lines.extend(_host_lines(outcome, hosts, attempt.final_versions.get(outcome.host)))
    if attempt.rollback_outcomes:
        lines.append("Rollback:")
        for outcome in attempt.rollback_outcomes.values():
            lines.extend(_host_lines(outcome, hosts, attempt.final_versions.get(outcome.host)))
    return "\n".join(lines)
