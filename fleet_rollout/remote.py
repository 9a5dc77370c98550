"""Bounded-timeout command execution on fleet hosts over SSH."""

import asyncio
import os
import socket
import threading
import time
from dataclasses import dataclass

import paramiko

from .errors import CommandError
from .logger import get_logger


@dataclass
class CommandResult:
    command: str
    stdout: str
    stderr: str
    exit_status: int

    @property
    def ok(self):
        return self.exit_status == 0

    @property
    def output(self):
        return f"{self.stdout}\n{self.stderr}".strip()


def default_key_resolver(credentials_ref):
    # The reference names a key file; its contents are never read here.
    return os.path.expanduser(credentials_ref)


class SSHRunner:
    """Runs one command per connection on a host.

    ``Host.credentials_ref`` is handed to ``key_resolver`` to obtain the key
    filename passed to paramiko; hosts without a reference fall back to the
    SSH agent and the user's default keys.

    A command never outlives the call that started it: ``run_sync`` gives
    up once ``timeout`` has elapsed, and when ``run`` is cancelled it closes
    the connection and waits for the worker thread before re-raising.
    """

    poll_interval = 0.1

    def __init__(self, username=None, port=22, connect_timeout=10.0, command_timeout=300.0,
                 key_resolver=None, client_factory=None):
        self.username = username
        self.port = port
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self.key_resolver = key_resolver if key_resolver else default_key_resolver
        self._client_factory = client_factory if client_factory else paramiko.SSHClient
        self._local = threading.local()
        self.logger = get_logger("remote")

    def _connect(self, host):
        client = self._client_factory()
        tracked = getattr(self._local, "clients", None)
        if tracked is not None:
            tracked.append(client)
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        kwargs = {
            "hostname": host.address,
            "port": self.port,
            "username": host.user or self.username,
            "timeout": self.connect_timeout,
            "allow_agent": True,
        }
        if host.credentials_ref:
            kwargs["key_filename"] = self.key_resolver(host.credentials_ref)
            kwargs["look_for_keys"] = False
        try:
            client.connect(**kwargs)
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise CommandError(host.address, "<connect>", str(e)) from e
        return client

    def run_sync(self, host, command, timeout=None):
        timeout = timeout if timeout else self.command_timeout
        client = self._connect(host)
        try:
            self.logger.debug(f"{host.address}$ {command}")
            _, stdout, stderr = client.exec_command(command, timeout=timeout)
            channel = stdout.channel
            deadline = time.monotonic() + timeout
            while not channel.exit_status_ready():
                if time.monotonic() > deadline:
                    channel.close()
                    raise CommandError(host.address, command, f"timed out after {timeout}s")
                time.sleep(self.poll_interval)
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            status = channel.recv_exit_status()
        except (paramiko.SSHException, socket.timeout, OSError) as e:
            raise CommandError(host.address, command, str(e) or type(e).__name__) from e
        finally:
            client.close()
        return CommandResult(command, out, err, status)

    def _run_tracked(self, clients, host, command, timeout):
        self._local.clients = clients
        try:
            return self.run_sync(host, command, timeout)
        finally:
            self._local.clients = None

    async def run(self, host, command, timeout=None):
        clients = []
        future = asyncio.ensure_future(asyncio.to_thread(self._run_tracked, clients, host, command, timeout))
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            # closing the connection unblocks paramiko; the thread must be gone before the host is reused
            self.logger.warning(f"{host.address}: abandoning {command!r}, waiting for it to stop")
            for client in clients:
                client.close()
            await asyncio.gather(future, return_exceptions=True)
            raise
