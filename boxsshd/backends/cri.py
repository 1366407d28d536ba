# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""CRI backend driving ``crictl exec``.

tty sessions run crictl on a local pseudo-terminal: resizing that terminal
makes crictl forward the new size to the runtime. Without a tty, plain
pipes carry stdin, stdout and stderr. crictl's own exit code is the
command's exit code, so the container is checked with ``crictl inspect``
first and a missing or stopped container fails the start instead.
"""

from __future__ import annotations

import asyncio
import errno
import fcntl
import json
import os
import pty
import struct
import termios
from typing import List, Optional, Set

from boxsshd.bridge.errors import ExecStartError, ResizeError
from boxsshd.bridge.provider import (
    ExecConfig,
    ExecResult,
    ResizeOptions,
    StreamWriter,
    with_environment,
)
from boxsshd.paths import ServerDefaults
from boxsshd.utils.logging import get_logger

logger = get_logger(__name__)

READ_SIZE = 32 * 1024
INSPECT_TIMEOUT = 10  # seconds
RUNNING_STATE = "CONTAINER_RUNNING"


def normalize_endpoint(endpoint: str) -> str:
    """Add the unix:// scheme to bare socket paths."""
    if not endpoint:
        return ""
    if "://" not in endpoint:
        return f"unix://{endpoint}"
    return endpoint


def _make_controlling_tty() -> None:
    # Runs in the child: new session with the pty slave (fd 0) as its terminal
    os.setsid()
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class _PtyReaderProtocol(asyncio.Protocol):
    """Feeds pty master output into a StreamReader.

    Reading the master fails with EIO once the command exits and the slave
    side closes. That is end of output, not an error, and data buffered
    before it must still be readable.
    """

    def __init__(self, reader: asyncio.StreamReader):
        self._reader = reader

    def data_received(self, data: bytes) -> None:
        self._reader.feed_data(data)

    def eof_received(self) -> bool:
        self._reader.feed_eof()
        return False

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if exc is not None and getattr(exc, "errno", None) != errno.EIO:
            self._reader.set_exception(exc)
        else:
            self._reader.feed_eof()


def set_window_size(fd: int, size: ResizeOptions) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", size.height, size.width, 0, 0))


class CRISessionProvider:
    """Runs session commands in a CRI container through crictl."""

    def __init__(
        self,
        container_id: str,
        runtime_endpoint: str = ServerDefaults.CRI_RUNTIME_ENDPOINT,
        image_endpoint: str = "",
        crictl: str = "crictl",
    ):
        self.container_id = container_id
        self.runtime_endpoint = normalize_endpoint(runtime_endpoint)
        self.image_endpoint = normalize_endpoint(image_endpoint)
        self.crictl = crictl
        self._pty_fd: Optional[int] = None
        self._processes: Set[asyncio.subprocess.Process] = set()
        self._tasks: Set[asyncio.Task] = set()

    def _crictl_argv(self) -> List[str]:
        argv = [self.crictl]
        if self.runtime_endpoint:
            argv += ["--runtime-endpoint", self.runtime_endpoint]
        if self.image_endpoint:
            argv += ["--image-endpoint", self.image_endpoint]
        return argv

    def build_command(self, config: ExecConfig) -> List[str]:
        argv = self._crictl_argv() + ["exec", "-i"]
        if config.tty:
            argv.append("-t")
        argv.append(self.container_id)
        argv += with_environment(config.cmd, config.env)
        return argv

    async def check_container(self) -> None:
        """Raise ExecStartError unless crictl reports a running container.

        crictl exec exits 1 both when the container is missing and when the
        command fails, so the container is inspected before every start.
        """
        argv = self._crictl_argv() + ["inspect", self.container_id]
        process = await self._spawn(
            argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), INSPECT_TIMEOUT)
        except asyncio.TimeoutError as e:
            raise ExecStartError(f"crictl inspect {self.container_id} timed out") from e
        finally:
            self._reap(process)

        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            message = message or f"exit status {process.returncode}"
            raise ExecStartError(f"container {self.container_id} unavailable: {message}")

        try:
            state = json.loads(stdout)["status"]["state"]
        except (ValueError, KeyError, TypeError):
            logger.debug(f"{self.container_id}: no state in crictl inspect output")
            return
        if state != RUNNING_STATE:
            raise ExecStartError(f"container {self.container_id} is not running ({state})")

    async def exec(self, config: ExecConfig) -> asyncio.Future[ExecResult]:
        await self.check_container()
        argv = self.build_command(config)
        logger.debug(f"{self.container_id}: running {argv}")
        if config.tty:
            task = await self._start_tty(argv, config)
        else:
            task = await self._start_pipes(argv, config)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _spawn(self, argv: List[str], **kwargs) -> asyncio.subprocess.Process:
        try:
            process = await asyncio.create_subprocess_exec(*argv, **kwargs)
        except OSError as e:
            raise ExecStartError(f"cannot run {argv[0]}: {e}") from e
        self._processes.add(process)
        return process

    async def _start_pipes(self, argv: List[str], config: ExecConfig) -> asyncio.Task:
        process = await self._spawn(
            argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        return asyncio.create_task(self._run_pipes(process, config))

    async def _run_pipes(self, process: asyncio.subprocess.Process, config: ExecConfig) -> ExecResult:
        stderr: StreamWriter = config.stderr or config.stdout
        copy_in = asyncio.create_task(self._copy_to_process(process, config))
        try:
            await asyncio.gather(
                self._copy_stream(process.stdout, config.stdout),
                self._copy_stream(process.stderr, stderr),
            )
            exit_code = await process.wait()
        finally:
            copy_in.cancel()
            await asyncio.gather(copy_in, return_exceptions=True)
            self._reap(process)
        return ExecResult(exit_code=exit_code)

    async def _copy_to_process(self, process: asyncio.subprocess.Process, config: ExecConfig) -> None:
        if config.stdin is None:
            process.stdin.close()
            return
        try:
            while True:
                data = await config.stdin.read(READ_SIZE)
                if not data:
                    break
                process.stdin.write(data)
                await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug(f"{self.container_id}: command closed its stdin")
        finally:
            process.stdin.close()

    async def _copy_stream(self, source: asyncio.StreamReader, target: StreamWriter) -> None:
        while True:
            data = await source.read(READ_SIZE)
            if not data:
                return
            target.write(data)
            await target.drain()

    async def _start_tty(self, argv: List[str], config: ExecConfig) -> asyncio.Task:
        master_fd, slave_fd = pty.openpty()
        try:
            process = await self._spawn(
                argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                preexec_fn=_make_controlling_tty,
            )
        except ExecStartError:
            os.close(master_fd)
            raise
        finally:
            os.close(slave_fd)

        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        read_transport, _ = await loop.connect_read_pipe(
            lambda: _PtyReaderProtocol(reader), os.fdopen(master_fd, "rb", buffering=0)
        )
        write_transport, _ = await loop.connect_write_pipe(
            asyncio.Protocol, os.fdopen(os.dup(master_fd), "wb", buffering=0)
        )
        self._pty_fd = master_fd
        return asyncio.create_task(
            self._run_tty(process, reader, read_transport, write_transport, config)
        )

    async def _run_tty(
        self,
        process: asyncio.subprocess.Process,
        reader: asyncio.StreamReader,
        read_transport: asyncio.ReadTransport,
        write_transport: asyncio.WriteTransport,
        config: ExecConfig,
    ) -> ExecResult:
        copy_in = None
        if config.stdin is not None:
            copy_in = asyncio.create_task(self._copy_to_pty(write_transport, config))
        try:
            while True:
                data = await reader.read(READ_SIZE)
                if not data:
                    break
                config.stdout.write(data)
                await config.stdout.drain()
            exit_code = await process.wait()
        finally:
            if copy_in is not None:
                copy_in.cancel()
                await asyncio.gather(copy_in, return_exceptions=True)
            self._pty_fd = None
            read_transport.close()
            write_transport.close()
            self._reap(process)
        return ExecResult(exit_code=exit_code)

    async def _copy_to_pty(self, transport: asyncio.WriteTransport, config: ExecConfig) -> None:
        while True:
            data = await config.stdin.read(READ_SIZE)
            if not data or transport.is_closing():
                return
            transport.write(data)

    def _reap(self, process: asyncio.subprocess.Process) -> None:
        self._processes.discard(process)
        if process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            logger.debug(f"{self.container_id}: crictl already exited")

    async def resize(self, size: ResizeOptions) -> None:
        if self._pty_fd is None:
            raise ResizeError(f"no active tty exec in {self.container_id}")
        try:
            set_window_size(self._pty_fd, size)
        except OSError as e:
            raise ResizeError(f"resize in {self.container_id} failed: {e}") from e

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        for process in list(self._processes):
            self._reap(process)
