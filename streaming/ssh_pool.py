"""
SSH connection pool for media servers (paramiko).

Each pooled connection carries up to ``channels_per_connection`` concurrent
sessions (commands, streams, SFTP transfers). A server never has more than
``max_connections`` connections open, so at most
``max_connections * channels_per_connection`` operations run against it at
once. When every channel is taken, callers wait up to ``acquire_timeout``
seconds and then fail with "Media server is busy" rather than hang.

A long-running stream holds its channel until the stream is closed.
Connections that fail are no longer handed out and are closed once their
last channel is returned; connections idle longer than ``idle_ttl`` are
closed instead of reused.

paramiko is blocking, so every network call runs in a worker thread via
asyncio.to_thread.
"""

import asyncio
import logging
import socket
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional

import paramiko

from api.errors import CacheWriteError, RemoteTransportError
from config import (
    REMOTE_COMMAND_TIMEOUT,
    REMOTE_DOWNLOAD_TIMEOUT,
    SSH_ACQUIRE_TIMEOUT,
    SSH_CHANNELS_PER_CONNECTION,
    SSH_CONNECT_TIMEOUT,
    SSH_IDLE_TTL,
    SSH_KEY_FILE,
    SSH_KNOWN_HOSTS,
    SSH_MAX_CONNECTIONS,
    SSH_PASSWORD,
    SSH_PORT,
    SSH_USERNAME,
)
from streaming.transport import CommandResult, RemoteExecutor, RemoteStream

logger = logging.getLogger(__name__)

# Errors raised by paramiko/socket for a broken or unusable connection
TRANSPORT_ERRORS = (paramiko.SSHException, OSError, EOFError)

DOWNLOAD_CHUNK_SIZE = 1024 * 1024
KEEPALIVE_INTERVAL = 30


@dataclass(frozen=True)
class ServerAddress:
    """Where to reach a media server over SSH."""

    server_id: int
    host: str
    port: int = SSH_PORT
    username: str = SSH_USERNAME


AddressLookup = Callable[[int], Awaitable[ServerAddress]]


@dataclass
class PooledConnection:
    server_id: int
    client: paramiko.SSHClient
    created_at: float = field(default_factory=time.monotonic)
    last_used: float = field(default_factory=time.monotonic)
    # Channels currently checked out on this connection
    in_use: int = 0
    # Set after a transport error; no new checkouts
    broken: bool = False

    @property
    def alive(self) -> bool:
        transport = self.client.get_transport()
        return transport is not None and transport.is_active()


def _read_all(recv: Callable[[int], bytes]) -> bytes:
    parts: List[bytes] = []
    while True:
        data = recv(32768)
        if not data:
            break
        parts.append(data)
    return b"".join(parts)


class SSHChannelStream(RemoteStream):
    """Stdout of a command running on a checked-out pooled connection."""

    def __init__(
        self,
        pool: "SSHConnectionPool",
        pooled: PooledConnection,
        channel: paramiko.Channel,
        chunk_size: int,
        idle_timeout: float,
        command: str,
    ):
        self._pool = pool
        self._pooled = pooled
        self._channel = channel
        self._chunk_size = chunk_size
        self._idle_timeout = idle_timeout
        self._command = command
        self._broken = False
        self._closed = False

    def _recv(self) -> bytes:
        try:
            return self._channel.recv(self._chunk_size)
        except socket.timeout:
            raise RemoteTransportError(
                "Media server stopped sending data",
                details=f"no data for {self._idle_timeout:.0f}s",
            )
        except TRANSPORT_ERRORS as e:
            self._broken = True
            raise RemoteTransportError("Connection to media server lost", details=str(e)) from e

    async def chunks(self) -> AsyncIterator[bytes]:
        try:
            while True:
                data = await asyncio.to_thread(self._recv)
                if not data:
                    break
                yield data
            if self._channel.exit_status_ready():
                status = self._channel.recv_exit_status()
                if status != 0:
                    logger.warning(f"Remote stream command exited with status {status} on server {self._pooled.server_id}")
        finally:
            await self.close()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._channel.close()
        except TRANSPORT_ERRORS as e:
            logger.debug(f"Error closing channel on server {self._pooled.server_id}: {e}")
            self._broken = True
        await self._pool.release(self._pooled, discard=self._broken)


class SSHConnectionPool(RemoteExecutor):
    """Bounded, reusable SSH connections keyed by media server id."""

    def __init__(
        self,
        address_lookup: AddressLookup,
        username: str = SSH_USERNAME,
        password: str = SSH_PASSWORD,
        key_file: str = SSH_KEY_FILE,
        known_hosts: str = SSH_KNOWN_HOSTS,
        max_connections: int = SSH_MAX_CONNECTIONS,
        channels_per_connection: int = SSH_CHANNELS_PER_CONNECTION,
        acquire_timeout: float = SSH_ACQUIRE_TIMEOUT,
        connect_timeout: float = SSH_CONNECT_TIMEOUT,
        idle_ttl: float = SSH_IDLE_TTL,
        command_timeout: float = REMOTE_COMMAND_TIMEOUT,
    ):
        self._address_lookup = address_lookup
        self._username = username
        self._password = password
        self._key_file = key_file
        self._known_hosts = known_hosts
        self._max_connections = max_connections
        self._channels_per_connection = channels_per_connection
        self._acquire_timeout = acquire_timeout
        self._connect_timeout = connect_timeout
        self._idle_ttl = idle_ttl
        self._command_timeout = command_timeout
        self._connections: Dict[int, List[PooledConnection]] = {}
        self._connecting: Dict[int, int] = {}
        self._conditions: Dict[int, asyncio.Condition] = {}
        self._closed = False

    # ------------------------------------------------------------------
    # Checkout / return
    # ------------------------------------------------------------------

    def _condition(self, server_id: int) -> asyncio.Condition:
        cond = self._conditions.get(server_id)
        if cond is None:
            cond = asyncio.Condition()
            self._conditions[server_id] = cond
        return cond

    def _checkout(self, server_id: int) -> Optional[PooledConnection]:
        """Take a channel on the least busy usable connection. Caller holds the condition lock."""
        connections = self._connections.setdefault(server_id, [])
        now = time.monotonic()
        for pooled in list(connections):
            if pooled.in_use == 0 and (
                pooled.broken or not pooled.alive or now - pooled.last_used >= self._idle_ttl
            ):
                connections.remove(pooled)
                pooled.client.close()

        usable = [
            pooled
            for pooled in connections
            if not pooled.broken and pooled.alive and pooled.in_use < self._channels_per_connection
        ]
        if not usable:
            return None
        pooled = min(usable, key=lambda p: p.in_use)
        pooled.in_use += 1
        pooled.last_used = now
        return pooled

    def _can_connect(self, server_id: int) -> bool:
        opened = len(self._connections.get(server_id, [])) + self._connecting.get(server_id, 0)
        return opened < self._max_connections

    def _connect_sync(self, address: ServerAddress) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        if self._known_hosts:
            client.load_host_keys(self._known_hosts)
            client.set_missing_host_key_policy(paramiko.RejectPolicy())
        else:
            client.set_missing_host_key_policy(paramiko.WarningPolicy())
        try:
            client.connect(
                hostname=address.host,
                port=address.port,
                username=address.username or self._username,
                password=self._password or None,
                key_filename=self._key_file or None,
                timeout=self._connect_timeout,
                banner_timeout=self._connect_timeout,
                auth_timeout=self._connect_timeout,
                allow_agent=False,
                look_for_keys=not (self._password or self._key_file),
            )
        except paramiko.AuthenticationException as e:
            client.close()
            raise RemoteTransportError(
                "Authentication with media server failed",
                details=f"server {address.server_id}",
            ) from e
        except TRANSPORT_ERRORS as e:
            client.close()
            raise RemoteTransportError(
                "Could not connect to media server",
                details=f"server {address.server_id}: {e}",
            ) from e

        transport = client.get_transport()
        if transport is not None:
            transport.set_keepalive(KEEPALIVE_INTERVAL)
        return client

    async def acquire(self, server_id: int) -> PooledConnection:
        """
        Check out one channel on a connection to server_id.

        Shares an open connection when it has a free channel, opens a new
        connection while under max_connections, and otherwise waits for a
        release. Raises RemoteTransportError if nothing frees up within
        acquire_timeout.
        """
        cond = self._condition(server_id)
        deadline = time.monotonic() + self._acquire_timeout
        async with cond:
            while True:
                if self._closed:
                    raise RemoteTransportError("Connection pool is closed")
                pooled = self._checkout(server_id)
                if pooled is not None:
                    return pooled
                if self._can_connect(server_id):
                    self._connecting[server_id] = self._connecting.get(server_id, 0) + 1
                    break
                remaining = deadline - time.monotonic()
                try:
                    if remaining <= 0:
                        raise asyncio.TimeoutError()
                    await asyncio.wait_for(cond.wait(), remaining)
                except asyncio.TimeoutError:
                    logger.warning(f"No free SSH channel to server {server_id} after {self._acquire_timeout:.1f}s")
                    raise RemoteTransportError(
                        "Media server is busy",
                        details=f"all SSH channels to server {server_id} in use",
                    ) from None

        pooled = None
        try:
            address = await self._address_lookup(server_id)
            logger.info(f"Opening SSH connection to server {server_id} ({address.host}:{address.port})")
            client = await asyncio.to_thread(self._connect_sync, address)
            pooled = PooledConnection(server_id=server_id, client=client, in_use=1)
        finally:
            async with cond:
                self._connecting[server_id] -= 1
                if pooled is not None:
                    self._connections.setdefault(server_id, []).append(pooled)
                # Waiters can share the new connection, or retry the connect
                cond.notify_all()
        return pooled

    async def release(self, pooled: PooledConnection, discard: bool = False) -> None:
        """Return a checked-out channel; discarded connections take no new work and close when drained."""
        cond = self._condition(pooled.server_id)
        async with cond:
            pooled.in_use -= 1
            pooled.last_used = time.monotonic()
            if discard:
                pooled.broken = True
            if pooled.in_use == 0 and (pooled.broken or self._closed or not pooled.alive):
                connections = self._connections.get(pooled.server_id, [])
                if pooled in connections:
                    connections.remove(pooled)
                pooled.client.close()
            cond.notify_all()

    @asynccontextmanager
    async def connection(self, server_id: int):
        """Check out a channel on a connection for the duration of the block."""
        pooled = await self.acquire(server_id)
        discard = False
        try:
            yield pooled.client
        except RemoteTransportError:
            discard = True
            raise
        finally:
            await self.release(pooled, discard=discard)

    # ------------------------------------------------------------------
    # RemoteExecutor
    # ------------------------------------------------------------------

    @staticmethod
    def _open_channel_sync(client: paramiko.SSHClient, command: str, timeout: float) -> paramiko.Channel:
        transport = client.get_transport()
        if transport is None or not transport.is_active():
            raise RemoteTransportError("Connection to media server lost")
        try:
            channel = transport.open_session(timeout=timeout)
            channel.settimeout(timeout)
            channel.exec_command(command)
        except socket.timeout as e:
            raise RemoteTransportError("Media server did not respond", details=f"timeout after {timeout:.0f}s") from e
        except TRANSPORT_ERRORS as e:
            raise RemoteTransportError("Could not run command on media server", details=str(e)) from e
        return channel

    def _exec_sync(self, client: paramiko.SSHClient, command: str, timeout: float) -> CommandResult:
        channel = self._open_channel_sync(client, command, timeout)
        try:
            stdout = _read_all(channel.recv)
            stderr = _read_all(channel.recv_stderr)
            exit_status = channel.recv_exit_status()
        except socket.timeout as e:
            raise RemoteTransportError("Remote command timed out", details=f"after {timeout:.0f}s") from e
        except TRANSPORT_ERRORS as e:
            raise RemoteTransportError("Connection to media server lost", details=str(e)) from e
        finally:
            channel.close()
        return CommandResult(exit_status=exit_status, stdout=stdout, stderr=stderr)

    async def run(self, server_id: int, command: str, timeout: Optional[float] = None) -> CommandResult:
        timeout = timeout or self._command_timeout
        async with self.connection(server_id) as client:
            return await asyncio.to_thread(self._exec_sync, client, command, timeout)

    async def open_stream(
        self,
        server_id: int,
        command: str,
        idle_timeout: float,
        chunk_size: int,
    ) -> RemoteStream:
        pooled = await self.acquire(server_id)
        try:
            channel = await asyncio.to_thread(self._open_channel_sync, pooled.client, command, idle_timeout)
        except BaseException as e:
            await self.release(pooled, discard=isinstance(e, RemoteTransportError))
            raise
        return SSHChannelStream(self, pooled, channel, chunk_size, idle_timeout, command)

    @staticmethod
    def _download_sync(client: paramiko.SSHClient, remote_path: str, local_path: Path, timeout: float) -> int:
        try:
            sftp = client.open_sftp()
        except TRANSPORT_ERRORS as e:
            raise RemoteTransportError("Could not open file transfer session", details=str(e)) from e

        try:
            channel = sftp.get_channel()
            if channel is not None:
                channel.settimeout(timeout)
            try:
                remote_file = sftp.open(remote_path, "rb")
                remote_file.prefetch()
            except TRANSPORT_ERRORS as e:
                raise RemoteTransportError("Could not read file from media server", details=str(e)) from e

            total = 0
            with remote_file:
                try:
                    local_file = open(local_path, "wb")
                except OSError as e:
                    raise CacheWriteError(details=str(e)) from e
                with local_file:
                    while True:
                        try:
                            chunk = remote_file.read(DOWNLOAD_CHUNK_SIZE)
                        except TRANSPORT_ERRORS as e:
                            raise RemoteTransportError("Transfer from media server failed", details=str(e)) from e
                        if not chunk:
                            break
                        try:
                            local_file.write(chunk)
                        except OSError as e:
                            raise CacheWriteError(details=str(e)) from e
                        total += len(chunk)
            return total
        finally:
            sftp.close()

    async def download(
        self,
        server_id: int,
        remote_path: str,
        local_path: Path,
        timeout: Optional[float] = None,
    ) -> int:
        timeout = timeout or REMOTE_DOWNLOAD_TIMEOUT
        async with self.connection(server_id) as client:
            return await asyncio.to_thread(self._download_sync, client, remote_path, local_path, timeout)

    async def close(self) -> None:
        """Close idle connections now; busy ones close when their last channel is released."""
        self._closed = True
        for server_id, cond in list(self._conditions.items()):
            async with cond:
                connections = self._connections.get(server_id, [])
                idle = [pooled for pooled in connections if pooled.in_use == 0]
                for pooled in idle:
                    connections.remove(pooled)
                    pooled.client.close()
                logger.debug(f"Closed {len(idle)} idle SSH connection(s) to server {server_id}")
                cond.notify_all()
