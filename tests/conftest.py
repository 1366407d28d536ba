# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Shared fakes for boxsshd tests.

FakeChannel and FakeProvider stand in for an SSH channel and a container
runtime so the bridge can be driven without a network or a daemon.
"""

import asyncio
import os
import tempfile
from pathlib import Path
from typing import List, Optional

# Keep test logs out of the user's state directory
os.environ.setdefault("BOXSSHD_LOG_FILE", str(Path(tempfile.gettempdir()) / "boxsshd-tests.log"))

import pytest

from boxsshd.bridge.channel import ChannelRequest
from boxsshd.bridge.provider import ExecConfig, ExecResult, ResizeOptions
from boxsshd.host_config import reset_config


class FakeWriter:
    def __init__(self):
        self.data = bytearray()

    def write(self, data: bytes) -> None:
        self.data.extend(data)

    async def drain(self) -> None:
        pass


class FakeChannel:
    """In-memory channel with a scripted request queue."""

    def __init__(self, stdin: bytes = b""):
        self._stdin = stdin
        self._queue: asyncio.Queue = asyncio.Queue()
        self.stdout = FakeWriter()
        self._stderr = FakeWriter()
        self.sent_requests: List[tuple] = []
        self.closed = False
        self.closed_event = asyncio.Event()
        self.eof_written = False

    @property
    def stderr(self) -> FakeWriter:
        return self._stderr

    @property
    def written(self) -> bytes:
        return bytes(self.stdout.data)

    def push(self, request_type: str, payload: bytes = b"", want_reply: bool = True) -> ChannelRequest:
        request = ChannelRequest(request_type, payload, want_reply)
        self._queue.put_nowait(request)
        return request

    async def read(self, n: int = -1) -> bytes:
        data, self._stdin = self._stdin, b""
        return data

    def write(self, data: bytes) -> None:
        self.stdout.write(data)

    async def drain(self) -> None:
        pass

    def write_eof(self) -> None:
        self.eof_written = True

    async def requests(self):
        while True:
            request = await self._queue.get()
            if request is None:
                return
            yield request

    async def send_request(self, request_type: str, want_reply: bool, payload: bytes) -> bool:
        self.sent_requests.append((request_type, payload))
        return True

    def end_requests(self) -> None:
        """End the request stream without closing the channel."""
        self._queue.put_nowait(None)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(None)
            self.closed_event.set()


class FakeNewChannel:
    def __init__(self, channel_type: str, extra_data: bytes = b"", channel: Optional[FakeChannel] = None):
        self.channel_type = channel_type
        self.extra_data = extra_data
        self.channel = channel or FakeChannel()
        self.accepted = False
        self.rejected: Optional[tuple] = None

    async def accept(self) -> FakeChannel:
        self.accepted = True
        return self.channel

    def reject(self, reason: int, message: str) -> None:
        self.rejected = (reason, message)


class FakeConnection:
    def __init__(self):
        self.closed = False

    def close(self) -> None:
        self.closed = True


class FakeProvider:
    """Records backend calls; exec completes immediately unless ``hold`` is set."""

    def __init__(
        self,
        exit_code: int = 0,
        exec_error: Optional[Exception] = None,
        resize_error: Optional[Exception] = None,
        hold: bool = False,
    ):
        self.exit_code = exit_code
        self.exec_error = exec_error
        self.resize_error = resize_error
        self.hold = hold
        self.exec_calls: List[ExecConfig] = []
        self.resize_calls: List[ResizeOptions] = []
        self.events: List[str] = []
        self.completion: Optional[asyncio.Future] = None
        self.closed = False

    async def exec(self, config: ExecConfig) -> asyncio.Future:
        self.exec_calls.append(config)
        self.events.append("exec")
        if self.exec_error is not None:
            raise self.exec_error
        self.completion = asyncio.get_running_loop().create_future()
        if not self.hold:
            self.completion.set_result(ExecResult(exit_code=self.exit_code))
        return self.completion

    def finish(self, exit_code: int = 0) -> None:
        self.completion.set_result(ExecResult(exit_code=exit_code))

    async def resize(self, size: ResizeOptions) -> None:
        self.resize_calls.append(size)
        self.events.append("resize")
        if self.resize_error is not None:
            raise self.resize_error

    async def close(self) -> None:
        self.closed = True


async def wait_replied(request: ChannelRequest, timeout: float = 1.0) -> bool:
    """Wait until a request has been answered and return the answer."""

    async def _poll():
        while request.replied is None:
            await asyncio.sleep(0)
        return request.replied

    return await asyncio.wait_for(_poll(), timeout)


async def wait_closed(channel: FakeChannel, timeout: float = 1.0) -> None:
    await asyncio.wait_for(channel.closed_event.wait(), timeout)


@pytest.fixture(autouse=True)
def fresh_host_config():
    """Each test loads its own configuration."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def held_provider():
    """Provider whose commands keep running until finish() is called."""
    return FakeProvider(hold=True)
