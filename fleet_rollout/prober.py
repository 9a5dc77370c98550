import asyncio
import time

import httpx

from .errors import ProbeFailure
from .logger import get_logger
from .models import ProbeResult, ProbeState


class HealthProber:
    """Polls worker health endpoints until they answer with the expected status"""

    def __init__(self, path="/health", expected_status=200, scheme="http",
                 transport=None, snippet_length=200):
        self.path = path if path.startswith("/") else f"/{path}"
        self.expected_status = expected_status
        self.scheme = scheme
        self.transport = transport  # httpx transport override, e.g. MockTransport
        self.snippet_length = snippet_length
        self.logger = get_logger("prober")

    def url_for(self, host, worker_index):
        # httpx brackets IPv6 literals in the authority
        return httpx.URL(scheme=self.scheme, host=host.address, port=host.worker_port(worker_index), path=self.path)

    async def wait_healthy(self, host, worker_index, timeout, max_retries, retry_delay):
        """Probe one worker up to ``max_retries + 1`` times.

        Returns as soon as a probe sees the expected status. The result is
        ERRORED when every attempt failed at the transport level, otherwise
        UNHEALTHY once the budget is spent.
        """
        url = self.url_for(host, worker_index)
        result = ProbeResult(worker_index=worker_index, port=host.worker_port(worker_index))
        allowed = max(0, max_retries) + 1
        transport_errors = 0
        started = time.monotonic()

        async with httpx.AsyncClient(transport=self.transport, timeout=timeout) as client:
            for attempt in range(1, allowed + 1):
                result.attempts = attempt
                sent = time.monotonic()
                try:
                    response = await client.get(url)
                except httpx.TransportError as e:
                    transport_errors += 1
                    result.last_status = None
                    result.last_error = f"{type(e).__name__}: {e}"
                    result.last_latency_s = time.monotonic() - sent
                else:
                    result.last_status = response.status_code
                    result.last_error = None
                    result.last_latency_s = time.monotonic() - sent
                    if response.status_code == self.expected_status:
                        result.state = ProbeState.HEALTHY
                        result.body_snippet = None
                        break
                    result.body_snippet = response.text[:self.snippet_length]

                if attempt < allowed:
                    self.logger.debug(f"{url} not healthy ({result.last_status or result.last_error}), "
                                      f"attempt {attempt}/{allowed}, retrying in {retry_delay}s")
                    await asyncio.sleep(retry_delay)
            else:
                result.state = ProbeState.ERRORED if transport_errors == allowed else ProbeState.UNHEALTHY

        result.elapsed_s = time.monotonic() - started
        if result.healthy:
            self.logger.info(f"{host.worker_label(worker_index)} on {host.address} healthy after {result.attempts} attempt(s)")
        else:
            self.logger.warning(f"{host.worker_label(worker_index)} on {host.address} {result.state.value} "
                                f"after {result.attempts} attempt(s): {result.last_status or result.last_error}")
        return result

    async def check_host(self, host, timeout, max_retries, retry_delay):
        """Probe every worker on ``host`` concurrently, in worker order."""
        probes = [self.wait_healthy(host, i, timeout, max_retries, retry_delay) for i in host.worker_indexes()]
        return list(await asyncio.gather(*probes))

    async def ensure_healthy(self, host, timeout, max_retries, retry_delay):
        results = await self.check_host(host, timeout, max_retries, retry_delay)
        if not all(r.healthy for r in results):
            raise ProbeFailure(host.address, results)
        return results
