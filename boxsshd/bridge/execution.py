# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Exactly-once command start and exit-status reporting for a session."""

from __future__ import annotations

import asyncio
from typing import List, Optional

from boxsshd.bridge.channel import Channel
from boxsshd.bridge.errors import ExecAlreadyStartedError
from boxsshd.bridge.messages import pack_exit_status
from boxsshd.bridge.provider import (
    EXIT_CODE_UNKNOWN,
    ExecConfig,
    ExecResult,
    SessionProvider,
)
from boxsshd.bridge.resize import ResizeCoordinator
from boxsshd.utils.logging import get_logger

logger = get_logger(__name__)

EXIT_STATUS_REQUEST = "exit-status"


class ExecLifecycle:
    """Starts one command on a channel and reports how it ended.

    The first exec() call owns the session; every later call raises
    ExecAlreadyStartedError without touching the backend. Once the backend
    has started the command, a watcher task waits for its completion,
    sends a single exit-status request and closes the channel.
    """

    def __init__(
        self,
        channel: Channel,
        provider: SessionProvider,
        resizer: ResizeCoordinator,
        label: str = "session",
    ):
        self._channel = channel
        self._provider = provider
        self._resizer = resizer
        self._label = label
        self._lock = asyncio.Lock()
        self._completion: Optional[asyncio.Future[ExecResult]] = None
        self._watcher: Optional[asyncio.Task] = None
        self.started = False
        self.exit_code: Optional[int] = None

    async def exec(self, cmd: List[str], env: List[str], tty: bool) -> None:
        """Start ``cmd`` in the backend.

        Backend start failures propagate to the caller and leave the
        channel open.
        """
        async with self._lock:
            if self.started:
                raise ExecAlreadyStartedError()
            self.started = True

            config = ExecConfig(
                cmd=list(cmd),
                env=list(env),
                tty=tty,
                stdin=self._channel,
                stdout=self._channel,
                stderr=self._channel.stderr,
            )
            logger.debug(f"{self._label}: exec {cmd} tty={tty} env={len(env)}")
            self._completion = await self._provider.exec(config)

        self._resizer.mark_started()
        await self._resizer.apply_if_pending()

        self._watcher = asyncio.create_task(self._watch(self._completion))

    async def _watch(self, completion: asyncio.Future[ExecResult]) -> None:
        try:
            try:
                result = await completion
            except asyncio.CancelledError:
                completion.cancel()
                raise
            except Exception as e:
                logger.warning(f"{self._label}: command failed without a status: {e}")
                result = ExecResult(exit_code=EXIT_CODE_UNKNOWN, error=e)

            if result.error is not None:
                logger.warning(f"{self._label}: command ended with error: {result.error}")

            self.exit_code = result.exit_code
            logger.debug(f"{self._label}: exit status {result.exit_code}")
            try:
                await self._channel.send_request(
                    EXIT_STATUS_REQUEST, False, pack_exit_status(result.exit_code)
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"{self._label}: could not send exit-status: {e}")
        finally:
            self._channel.close()

    @property
    def running(self) -> bool:
        return self._watcher is not None and not self._watcher.done()

    async def wait(self) -> Optional[int]:
        """Wait for the watcher to finish and return the reported exit code."""
        if self._watcher is not None:
            await asyncio.shield(self._watcher)
        return self.exit_code

    def cancel(self) -> None:
        """Stop the command and close the channel; used when the channel goes away.

        The watcher may not have run yet, so the completion is cancelled and
        the channel closed here rather than left to the watcher.
        """
        if self._watcher is not None and not self._watcher.done():
            self._watcher.cancel()
        if self._completion is not None and not self._completion.done():
            self._completion.cancel()
        if self.started:
            self._channel.close()
