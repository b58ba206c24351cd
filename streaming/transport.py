"""
Remote execution contract used by the streaming core.

The core never talks to SSH directly. It depends on a RemoteExecutor, which
runs shell commands on a named media server, opens long-running byte streams
from a command's stdout, and downloads files. The production implementation
is streaming.ssh_pool.SSHConnectionPool.

Implementations must tolerate concurrent calls for the same server from
unrelated requests.
"""

import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Optional


@dataclass
class CommandResult:
    """Outcome of a remote command that ran to completion."""

    exit_status: int
    stdout: bytes
    stderr: bytes

    @property
    def ok(self) -> bool:
        return self.exit_status == 0

    @property
    def text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    @property
    def error_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace").strip()


class RemoteStream(ABC):
    """
    Stdout of a remote command, read incrementally.

    Chunks are only read from the remote side when the consumer asks for the
    next one, so a slow HTTP client pauses the remote read. close() is
    idempotent and must release the underlying channel and connection.
    """

    @abstractmethod
    def chunks(self) -> AsyncIterator[bytes]:
        """Yield stdout chunks until EOF. Raises RemoteTransportError on failure or idle timeout."""

    @abstractmethod
    async def close(self) -> None:
        """Release the channel; safe to call more than once."""

    async def __aenter__(self) -> "RemoteStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


class RemoteExecutor(ABC):
    """Runs commands and transfers files on media servers addressed by id."""

    @abstractmethod
    async def run(self, server_id: int, command: str, timeout: Optional[float] = None) -> CommandResult:
        """
        Run a command and collect its output.

        A command that runs and exits non-zero is a normal CommandResult.

        Raises:
            RemoteTransportError: if the command could not be run (connection
                failure, channel error, timeout).
        """

    @abstractmethod
    async def open_stream(
        self,
        server_id: int,
        command: str,
        idle_timeout: float,
        chunk_size: int,
    ) -> RemoteStream:
        """
        Start a command and return its stdout as a RemoteStream.

        The command is started before this returns, so transport failures
        surface here rather than after response headers are sent.

        Raises:
            RemoteTransportError: if the command could not be started.
        """

    @abstractmethod
    async def download(
        self,
        server_id: int,
        remote_path: str,
        local_path: Path,
        timeout: Optional[float] = None,
    ) -> int:
        """
        Copy a remote file to local_path and return the number of bytes written.

        Raises:
            RemoteTransportError: if reading from the server failed.
            CacheWriteError: if writing local_path failed.
        """

    async def close(self) -> None:
        """Release all connections."""


def quote(value: str) -> str:
    """Shell-quote a single argument for a remote POSIX shell."""
    return shlex.quote(value)
