# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Transport-neutral view of an SSH connection.

The bridge only talks to these protocols. boxsshd.server implements them
on top of asyncssh; the tests implement them with in-memory fakes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Optional, Protocol

from boxsshd.bridge.provider import StreamWriter

CHANNEL_SESSION = "session"
CHANNEL_DIRECT_TCPIP = "direct-tcpip"

# RFC 4254 channel open failure reason codes
OPEN_ADMINISTRATIVELY_PROHIBITED = 1
OPEN_CONNECT_FAILED = 2
OPEN_UNKNOWN_CHANNEL_TYPE = 3
OPEN_RESOURCE_SHORTAGE = 4


def _no_reply(ok: bool) -> None:
    pass


@dataclass
class ChannelRequest:
    """One in-band request on a channel, answered at most once."""

    request_type: str
    payload: bytes = b""
    want_reply: bool = False
    responder: Callable[[bool], None] = field(default=_no_reply, repr=False)
    replied: Optional[bool] = field(default=None, init=False)

    def reply(self, ok: bool) -> None:
        if self.replied is not None:
            return
        self.replied = ok
        self.responder(ok)


# Connection-level requests share the same shape
GlobalRequest = ChannelRequest


class Channel(Protocol):
    """A duplex byte stream with an ordered request stream."""

    @property
    def stderr(self) -> StreamWriter: ...

    async def read(self, n: int = -1) -> bytes: ...

    def write(self, data: bytes) -> None: ...

    async def drain(self) -> None: ...

    def write_eof(self) -> None: ...

    def requests(self) -> AsyncIterator[ChannelRequest]: ...

    async def send_request(self, request_type: str, want_reply: bool, payload: bytes) -> bool: ...

    def close(self) -> None: ...


class NewChannel(Protocol):
    """A channel the peer asked to open, not yet accepted."""

    channel_type: str
    extra_data: bytes

    async def accept(self) -> Channel: ...

    def reject(self, reason: int, message: str) -> None: ...


class Connection(Protocol):
    def close(self) -> None: ...
