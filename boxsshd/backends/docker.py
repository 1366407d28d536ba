# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Docker Engine backend.

Commands run through the exec API: exec_create + exec_start(socket=True)
gives a hijacked duplex socket. Docker has no blocking "wait for exec"
call, so once the output stream ends the exit code is polled with
exec_inspect.
"""

from __future__ import annotations

import asyncio
import functools
import socket
import struct
from typing import Any, List, Optional, Set, Tuple

import docker
from docker.errors import APIError, NotFound

from boxsshd.bridge.errors import ExecStartError, ResizeError
from boxsshd.bridge.provider import (
    DEFAULT_EXEC_TIMEOUT,
    DEFAULT_POLL_INTERVAL,
    ExecConfig,
    ExecResult,
    ResizeOptions,
    poll_exit_code,
)
from boxsshd.utils.logging import get_logger

logger = get_logger(__name__)

READ_SIZE = 32 * 1024

# Stream ids in Docker's multiplexed (non-tty) attach protocol
STREAM_STDOUT = 1
STREAM_STDERR = 2
FRAME_HEADER = struct.Struct(">BxxxL")


class StreamDemuxer:
    """Splits Docker's 8-byte framed stream into (stream, payload) pairs."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    def feed(self, data: bytes) -> List[Tuple[int, bytes]]:
        self._buffer.extend(data)
        frames: List[Tuple[int, bytes]] = []
        while len(self._buffer) >= FRAME_HEADER.size:
            stream, size = FRAME_HEADER.unpack_from(self._buffer)
            end = FRAME_HEADER.size + size
            if len(self._buffer) < end:
                break
            frames.append((stream, bytes(self._buffer[FRAME_HEADER.size : end])))
            del self._buffer[:end]
        return frames


class DockerSessionProvider:
    """Runs session commands with ``docker exec`` in one container."""

    def __init__(
        self,
        client: docker.DockerClient,
        container: str,
        exec_timeout: float = DEFAULT_EXEC_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self.client = client
        self.container = container
        self.exec_timeout = exec_timeout
        self.poll_interval = poll_interval
        self.exec_id: Optional[str] = None
        self._tasks: Set[asyncio.Task] = set()

    async def _call(self, func, *args: Any, **kwargs: Any) -> Any:
        """Run a blocking docker SDK call in the default executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))

    async def exec(self, config: ExecConfig) -> asyncio.Future[ExecResult]:
        api = self.client.api
        try:
            created = await self._call(
                api.exec_create,
                self.container,
                cmd=config.cmd,
                stdin=config.stdin is not None,
                stdout=True,
                stderr=config.stderr is not None,
                tty=config.tty,
                environment=config.env or None,
            )
            exec_id = created["Id"]
            sock = await self._call(api.exec_start, exec_id, tty=config.tty, socket=True, demux=False)
        except NotFound as e:
            raise ExecStartError(f"container {self.container} not found") from e
        except APIError as e:
            raise ExecStartError(f"docker exec in {self.container} failed: {e}") from e

        self.exec_id = exec_id
        logger.debug(f"{self.container}: started exec {exec_id[:12]} {config.cmd}")

        task = asyncio.create_task(self._run(exec_id, sock, config))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, exec_id: str, sock: Any, config: ExecConfig) -> ExecResult:
        loop = asyncio.get_running_loop()
        # exec_start returns a SocketIO wrapper around the hijacked socket
        raw = getattr(sock, "_sock", sock)
        raw.setblocking(False)

        copy_in: Optional[asyncio.Task] = None
        if config.stdin is not None:
            copy_in = asyncio.create_task(self._copy_in(loop, raw, config))

        error: Optional[BaseException] = None
        try:
            await self._copy_out(loop, raw, config)
        except OSError as e:
            error = e
        finally:
            if copy_in is not None:
                copy_in.cancel()
                await asyncio.gather(copy_in, return_exceptions=True)
            sock.close()

        exit_code = await poll_exit_code(
            functools.partial(self._inspect, exec_id),
            interval=self.poll_interval,
            timeout=self.exec_timeout,
            label=f"{self.container}: exec {exec_id[:12]}",
        )
        return ExecResult(exit_code=exit_code, error=error)

    async def _copy_in(self, loop: asyncio.AbstractEventLoop, raw: socket.socket, config: ExecConfig) -> None:
        while True:
            data = await config.stdin.read(READ_SIZE)
            if not data:
                # Half-close so the command sees EOF on stdin
                try:
                    raw.shutdown(socket.SHUT_WR)
                except OSError as e:
                    logger.debug(f"{self.container}: shutdown of exec stdin failed: {e}")
                return
            await loop.sock_sendall(raw, data)

    async def _copy_out(self, loop: asyncio.AbstractEventLoop, raw: socket.socket, config: ExecConfig) -> None:
        demuxer = None if config.tty else StreamDemuxer()
        while True:
            data = await loop.sock_recv(raw, READ_SIZE)
            if not data:
                return
            if demuxer is None:
                config.stdout.write(data)
            else:
                for stream, payload in demuxer.feed(data):
                    if stream == STREAM_STDERR and config.stderr is not None:
                        config.stderr.write(payload)
                    else:
                        config.stdout.write(payload)
            await config.stdout.drain()

    async def _inspect(self, exec_id: str) -> Tuple[bool, Optional[int]]:
        info = await self._call(self.client.api.exec_inspect, exec_id)
        return bool(info.get("Running")), info.get("ExitCode")

    async def resize(self, size: ResizeOptions) -> None:
        if self.exec_id is None:
            raise ResizeError(f"no active exec in {self.container}")
        try:
            await self._call(
                self.client.api.exec_resize, self.exec_id, height=size.height, width=size.width
            )
        except APIError as e:
            raise ResizeError(f"docker exec resize failed: {e}") from e

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
