# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Request handling for "session" channels."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict, List, Tuple

from boxsshd.bridge.channel import Channel, ChannelRequest
from boxsshd.bridge.errors import BridgeError, EmptyCommandError, UnknownRequestError
from boxsshd.bridge.execution import ExecLifecycle
from boxsshd.bridge.messages import (
    parse_env_request,
    parse_exec_request,
    parse_pty_request,
    parse_window_change,
)
from boxsshd.bridge.provider import SessionProvider
from boxsshd.bridge.resize import ResizeCoordinator
from boxsshd.utils.logging import get_logger

logger = get_logger(__name__)


def split_command(command: str) -> List[str]:
    """Split an exec command line on whitespace. No shell quoting."""
    return command.split()


class Session:
    """Per-channel state machine for SSH session requests.

    Requests are handled one at a time in arrival order. A failing request
    is answered with a failure reply and the channel keeps going.
    """

    def __init__(
        self,
        channel: Channel,
        provider: SessionProvider,
        default_command: str,
        label: str = "session",
    ):
        self.channel = channel
        self.default_command = default_command
        self.label = label
        self.pty_requested = False
        self.term = ""
        self.environment: List[Tuple[str, str]] = []
        self.resizer = ResizeCoordinator(provider, label=label)
        self.lifecycle = ExecLifecycle(channel, provider, self.resizer, label=label)
        self._handlers: Dict[str, Callable[[bytes], Awaitable[None]]] = {
            "pty-req": self._handle_pty_req,
            "window-change": self._handle_window_change,
            "env": self._handle_env,
            "shell": self._handle_shell,
            "exec": self._handle_exec,
        }

    @property
    def env_list(self) -> List[str]:
        return [f"{name}={value}" for name, value in self.environment]

    async def serve(self) -> None:
        """Consume the channel's request stream until it ends."""
        try:
            async for request in self.channel.requests():
                ok = await self.handle(request)
                if request.want_reply:
                    request.reply(ok)
        finally:
            # Channel is gone; stop copying if the command is still running
            self.lifecycle.cancel()

    async def handle(self, request: ChannelRequest) -> bool:
        """Handle one request and return whether it succeeded."""
        try:
            handler = self._handlers.get(request.request_type)
            if handler is None:
                raise UnknownRequestError(request.request_type)
            await handler(request.payload)
        except asyncio.CancelledError:
            raise
        except BridgeError as e:
            logger.warning(f"{self.label}: {request.request_type} failed: {e}")
            return False
        except Exception:
            logger.exception(f"{self.label}: {request.request_type} failed")
            return False
        return True

    async def _handle_pty_req(self, payload: bytes) -> None:
        pty = parse_pty_request(payload)
        self.pty_requested = True
        self.term = pty.term
        await self.resizer.resize(pty.width, pty.height)

    async def _handle_window_change(self, payload: bytes) -> None:
        change = parse_window_change(payload)
        await self.resizer.resize(change.width, change.height)

    async def _handle_env(self, payload: bytes) -> None:
        env = parse_env_request(payload)
        self.environment.append((env.name, env.value))

    async def _handle_shell(self, payload: bytes) -> None:
        await self._start(split_command(self.default_command))

    async def _handle_exec(self, payload: bytes) -> None:
        request = parse_exec_request(payload)
        await self._start(split_command(request.command))

    async def _start(self, argv: List[str]) -> None:
        if not argv:
            raise EmptyCommandError()
        await self.lifecycle.exec(argv, self.env_list, self.pty_requested)
