# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Per-connection channel dispatch.

Bridge owns one authenticated connection:
- new channels are looked up in a fixed handler registry and either
  rejected or handed to their own task
- connection-level requests are drained by a keepalive loop
- the backend provider is shared by every channel of the connection
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set

from boxsshd.bridge.channel import (
    CHANNEL_DIRECT_TCPIP,
    CHANNEL_SESSION,
    OPEN_UNKNOWN_CHANNEL_TYPE,
    Channel,
    Connection,
    GlobalRequest,
    NewChannel,
)
from boxsshd.bridge.forward import handle_direct_tcpip
from boxsshd.bridge.provider import SessionProvider
from boxsshd.bridge.session import Session
from boxsshd.paths import ServerDefaults
from boxsshd.utils.logging import get_logger

logger = get_logger(__name__)

KEEPALIVE_REQUEST = "keepalive@openssh.com"

ChannelHandler = Callable[[Channel, bytes, str], Awaitable[None]]


@dataclass(frozen=True)
class BridgeConfig:
    default_command: str = ServerDefaults.COMMAND
    relay_command: List[str] = field(default_factory=lambda: list(ServerDefaults.RELAY_COMMAND))


async def _empty() -> AsyncIterator[GlobalRequest]:
    return
    yield  # pragma: no cover


class Bridge:
    """Dispatches the channels of one SSH connection."""

    def __init__(
        self,
        connection: Connection,
        channels: AsyncIterator[NewChannel],
        provider: SessionProvider,
        config: Optional[BridgeConfig] = None,
        global_requests: Optional[AsyncIterator[GlobalRequest]] = None,
        name: str = "connection",
    ):
        self._connection = connection
        self._channels = channels
        self._global_requests = global_requests if global_requests is not None else _empty()
        self.provider = provider
        self.config = config or BridgeConfig()
        self.name = name
        self._handlers: Dict[str, ChannelHandler] = {
            CHANNEL_SESSION: self._handle_session,
            CHANNEL_DIRECT_TCPIP: self._handle_direct_tcpip,
        }
        self._tasks: Set[asyncio.Task] = set()
        self._keepalive_task: Optional[asyncio.Task] = None
        self._channel_count = 0
        self._stopped = False

    @property
    def active_channels(self) -> int:
        return len(self._tasks)

    def supports(self, channel_type: str) -> bool:
        return channel_type in self._handlers

    async def start(self) -> None:
        """Serve channels until the connection's channel stream ends."""
        self._keepalive_task = asyncio.create_task(self._keepalive_loop())
        try:
            async for new_channel in self._channels:
                await self.dispatch(new_channel)
        finally:
            await self._shutdown()

    async def stop(self) -> None:
        """Close the transport, which unwinds every channel handler."""
        self._connection.close()
        await self._shutdown()

    async def dispatch(self, new_channel: NewChannel) -> Optional[asyncio.Task]:
        """Accept or reject one new channel.

        Returns the handler task of an accepted channel.
        """
        channel_type = new_channel.channel_type
        handler = self._handlers.get(channel_type)
        if handler is None:
            logger.warning(f"{self.name}: rejecting unknown channel type {channel_type!r}")
            new_channel.reject(OPEN_UNKNOWN_CHANNEL_TYPE, f"unknown channel type: {channel_type}")
            return None

        try:
            channel = await new_channel.accept()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"{self.name}: could not accept {channel_type} channel: {e}")
            return None

        self._channel_count += 1
        label = f"{self.name}/{channel_type}#{self._channel_count}"
        task = asyncio.create_task(self._run_handler(handler, channel, new_channel.extra_data, label))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_handler(
        self, handler: ChannelHandler, channel: Channel, extra_data: bytes, label: str
    ) -> None:
        try:
            await handler(channel, extra_data, label)
        except asyncio.CancelledError:
            channel.close()
            raise
        except Exception as e:
            logger.error(f"{label}: channel handler failed", exc=e)
            channel.close()

    async def _handle_session(self, channel: Channel, extra_data: bytes, label: str) -> None:
        session = Session(channel, self.provider, self.config.default_command, label=label)
        await session.serve()

    async def _handle_direct_tcpip(self, channel: Channel, extra_data: bytes, label: str) -> None:
        await handle_direct_tcpip(channel, extra_data, self.provider, self.config.relay_command)

    async def _keepalive_loop(self) -> None:
        async for request in self._global_requests:
            if request.request_type == KEEPALIVE_REQUEST:
                request.reply(True)
                continue
            logger.debug(f"{self.name}: ignoring global request {request.request_type!r}")
            if request.want_reply:
                request.reply(False)

    async def _shutdown(self) -> None:
        if self._stopped:
            return
        self._stopped = True

        if self._keepalive_task is not None:
            self._keepalive_task.cancel()

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        try:
            await self.provider.close()
        except Exception as e:
            logger.warning(f"{self.name}: closing backend failed: {e}")
        logger.debug(f"{self.name}: bridge stopped")
