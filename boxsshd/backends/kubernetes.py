# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Kubernetes pod-exec backend.

Uses the websocket exec stream of the official client. The stream object
is synchronous, so output is read in short executor hops and written from
the event loop, where writes wait for the channel to drain. No session
holds an executor thread between hops. The exit code arrives on the
stream's error channel.
"""

from __future__ import annotations

import asyncio
import functools
import json
from typing import Any, Optional, Tuple, Union

from kubernetes import client as k8s_client
from kubernetes.client.exceptions import ApiException
from kubernetes.stream import stream
from kubernetes.stream.ws_client import RESIZE_CHANNEL

from boxsshd.bridge.errors import ExecStartError, ResizeError
from boxsshd.bridge.provider import (
    EXIT_CODE_UNKNOWN,
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
UPDATE_TIMEOUT = 0.1  # seconds one executor hop waits for websocket frames


def _as_bytes(data: Union[str, bytes]) -> bytes:
    return data.encode("utf-8") if isinstance(data, str) else data


class KubernetesSessionProvider:
    """Runs session commands with pod exec in one pod."""

    def __init__(
        self,
        api: k8s_client.CoreV1Api,
        pod: str,
        namespace: str = ServerDefaults.KUBERNETES_NAMESPACE,
        container: Optional[str] = None,
    ):
        self.api = api
        self.pod = pod
        self.namespace = namespace
        self.container = container
        self._resp: Any = None
        self._task: Optional[asyncio.Task] = None

    @property
    def label(self) -> str:
        return f"{self.namespace}/{self.pod}"

    async def exec(self, config: ExecConfig) -> asyncio.Future[ExecResult]:
        kwargs = dict(
            command=with_environment(config.cmd, config.env),
            stdin=config.stdin is not None,
            stdout=True,
            # The API server refuses a separate stderr stream for tty execs
            stderr=not config.tty,
            tty=config.tty,
            _preload_content=False,
            binary=True,
        )
        if self.container:
            kwargs["container"] = self.container

        loop = asyncio.get_running_loop()
        try:
            resp = await loop.run_in_executor(
                None,
                functools.partial(
                    stream,
                    self.api.connect_get_namespaced_pod_exec,
                    self.pod,
                    self.namespace,
                    **kwargs,
                ),
            )
        except ApiException as e:
            raise ExecStartError(f"exec in pod {self.label} failed: {e.reason}") from e
        except OSError as e:
            raise ExecStartError(f"cannot reach API server for {self.label}: {e}") from e

        self._resp = resp
        logger.debug(f"{self.label}: started exec {config.cmd}")
        self._task = asyncio.create_task(self._run(resp, config))
        return self._task

    async def _run(self, resp: Any, config: ExecConfig) -> ExecResult:
        loop = asyncio.get_running_loop()
        copy_in: Optional[asyncio.Task] = None
        if config.stdin is not None:
            copy_in = asyncio.create_task(self._copy_in(loop, resp, config))

        stderr: StreamWriter = config.stderr or config.stdout
        error: Optional[BaseException] = None
        try:
            is_open = True
            while is_open:
                out, err, is_open = await loop.run_in_executor(None, self._read_frames, resp)
                if out:
                    config.stdout.write(out)
                    await config.stdout.drain()
                if err:
                    stderr.write(err)
                    await stderr.drain()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = e
        finally:
            if copy_in is not None:
                copy_in.cancel()
                await asyncio.gather(copy_in, return_exceptions=True)
            resp.close()
            if self._resp is resp:
                self._resp = None

        return ExecResult(exit_code=self._exit_code(resp), error=error)

    def _read_frames(self, resp: Any) -> Tuple[bytes, bytes, bool]:
        """Wait briefly for websocket frames and return what arrived."""
        resp.update(timeout=UPDATE_TIMEOUT)
        out = _as_bytes(resp.read_stdout()) if resp.peek_stdout() else b""
        err = _as_bytes(resp.read_stderr()) if resp.peek_stderr() else b""
        return out, err, resp.is_open()

    async def _copy_in(self, loop: asyncio.AbstractEventLoop, resp: Any, config: ExecConfig) -> None:
        while True:
            data = await config.stdin.read(READ_SIZE)
            if not data:
                return
            await loop.run_in_executor(None, resp.write_stdin, data)

    def _exit_code(self, resp: Any) -> int:
        try:
            code = resp.returncode
        except (TypeError, ValueError, KeyError, IndexError) as e:
            logger.warning(f"{self.label}: unreadable exec status: {e}")
            return EXIT_CODE_UNKNOWN
        return code if code is not None else EXIT_CODE_UNKNOWN

    async def resize(self, size: ResizeOptions) -> None:
        resp = self._resp
        if resp is None or not resp.is_open():
            raise ResizeError(f"no active exec in pod {self.label}")
        message = json.dumps({"Width": size.width, "Height": size.height})
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, resp.write_channel, RESIZE_CHANNEL, message)
        except OSError as e:
            raise ResizeError(f"resize in pod {self.label} failed: {e}") from e

    async def close(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        if self._resp is not None:
            self._resp.close()
            self._resp = None
