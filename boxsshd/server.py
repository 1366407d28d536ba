# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""AsyncSSH listener that feeds connections into the session bridge.

Architecture:
- SSHBridgeServer owns the asyncssh acceptor and the host keys
- BridgeSSHConnection (one per client) accepts every login, uses the
  username as the target container and runs one Bridge
- SessionChannelAdapter / TCPChannelAdapter turn asyncssh session
  callbacks into the Channel protocol the bridge consumes

AsyncSSH parses pty-req, window-change and env itself; the session adapter
re-encodes them as ordered ChannelRequests so the bridge sees one request
stream per channel. shell/exec replies are deferred until the bridge has
started (or failed to start) the command.
"""

from __future__ import annotations

import asyncio
import glob
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import asyncssh

from boxsshd.bridge.bridge import Bridge, BridgeConfig
from boxsshd.bridge.channel import (
    CHANNEL_DIRECT_TCPIP,
    CHANNEL_SESSION,
    ChannelRequest,
)
from boxsshd.bridge.execution import EXIT_STATUS_REQUEST
from boxsshd.bridge.messages import (
    pack_direct_tcpip,
    pack_env_request,
    pack_exec_request,
    pack_pty_request,
    pack_terminal_modes,
    pack_window_change,
)
from boxsshd.bridge.provider import SessionProvider
from boxsshd.host_config import ConfigError
from boxsshd.models.host_config import HostConfigModel
from boxsshd.utils.logging import get_logger

logger = get_logger(__name__)

ProviderFactory = Callable[[str], SessionProvider]

READ_CHUNK_SIZE = 32 * 1024


async def iterate_queue(queue: asyncio.Queue) -> AsyncIterator[Any]:
    """Yield queue items until a None sentinel arrives."""
    while True:
        item = await queue.get()
        if item is None:
            return
        yield item


class _StderrWriter:
    def __init__(self, adapter: "ChannelAdapter"):
        self._adapter = adapter

    def write(self, data: bytes) -> None:
        self._adapter.write_stderr(data)

    async def drain(self) -> None:
        await self._adapter.drain()


class ChannelAdapter:
    """Stream side of an asyncssh channel, shared by both channel types."""

    def __init__(self) -> None:
        self._chan: Optional[asyncssh.SSHChannel] = None
        self._reader = asyncio.StreamReader()
        self._requests: asyncio.Queue = asyncio.Queue()
        self._can_write = asyncio.Event()
        self._can_write.set()
        self._closed = False

    # asyncssh session callbacks

    def connection_made(self, chan: asyncssh.SSHChannel) -> None:
        self._chan = chan

    def data_received(self, data: bytes, datatype: Optional[int]) -> None:
        self._reader.feed_data(data)

    def eof_received(self) -> bool:
        self._reader.feed_eof()
        # Keep the channel half-open so output can still be sent
        return True

    def pause_writing(self) -> None:
        self._can_write.clear()

    def resume_writing(self) -> None:
        self._can_write.set()

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self._closed = True
        if not self._reader.at_eof():
            self._reader.feed_eof()
        self._can_write.set()
        self._requests.put_nowait(None)

    # Channel protocol

    @property
    def stderr(self) -> _StderrWriter:
        return _StderrWriter(self)

    async def read(self, n: int = READ_CHUNK_SIZE) -> bytes:
        return await self._reader.read(n)

    def write(self, data: bytes) -> None:
        if self._chan is not None and not self._closed and not self._chan.is_closing():
            self._chan.write(data)

    def write_stderr(self, data: bytes) -> None:
        self.write(data)

    async def drain(self) -> None:
        await self._can_write.wait()

    def write_eof(self) -> None:
        if self._chan is not None and not self._closed and not self._chan.is_closing():
            self._chan.write_eof()

    def requests(self) -> AsyncIterator[ChannelRequest]:
        return iterate_queue(self._requests)

    async def send_request(self, request_type: str, want_reply: bool, payload: bytes) -> bool:
        logger.debug(f"Not sending unsupported channel request {request_type!r}")
        return False

    def close(self) -> None:
        if self._chan is not None:
            self._chan.close()


class SessionChannelAdapter(ChannelAdapter, asyncssh.SSHServerSession):
    """A "session" channel as seen by the bridge."""

    def __init__(self) -> None:
        super().__init__()
        self._env_replayed = 0

    def _enqueue(
        self,
        request_type: str,
        payload: bytes = b"",
        want_reply: bool = False,
        responder: Optional[Callable[[bool], None]] = None,
    ) -> None:
        request = ChannelRequest(request_type, payload, want_reply)
        if responder is not None:
            request.responder = responder
        self._requests.put_nowait(request)

    def _replay_environment(self) -> None:
        # asyncssh collects env requests itself; hand them over in arrival order
        items = list(self._chan.get_environment().items())
        for name, value in items[self._env_replayed :]:
            self._enqueue("env", pack_env_request(name, value))
        self._env_replayed = len(items)

    def _report_start(self, ok: bool) -> None:
        if self._chan is not None and not self._closed:
            self._chan._report_response(ok)

    def _enqueue_start(self, request_type: str, payload: bytes = b"") -> None:
        self._replay_environment()
        self._enqueue(request_type, payload, want_reply=True, responder=self._report_start)

    def pty_requested(self, term_type: str, term_size, term_modes) -> bool:
        width, height, pixel_width, pixel_height = term_size
        self._enqueue(
            "pty-req",
            pack_pty_request(
                term_type,
                width,
                height,
                pixel_width,
                pixel_height,
                pack_terminal_modes(term_modes),
            ),
        )
        return True

    def terminal_size_changed(self, width: int, height: int, pixwidth: int, pixheight: int) -> None:
        self._enqueue("window-change", pack_window_change(width, height, pixwidth, pixheight))

    def shell_requested(self) -> Optional[bool]:
        self._enqueue_start("shell")
        return None  # reply sent by _report_start

    def exec_requested(self, command: str) -> Optional[bool]:
        self._enqueue_start("exec", pack_exec_request(command))
        return None  # reply sent by _report_start

    def subsystem_requested(self, subsystem: str) -> bool:
        logger.debug(f"Refusing subsystem {subsystem!r}")
        return False

    def break_received(self, msec: int) -> bool:
        return False

    def write_stderr(self, data: bytes) -> None:
        if self._chan is not None and not self._closed and not self._chan.is_closing():
            self._chan.write_stderr(data)

    async def send_request(self, request_type: str, want_reply: bool, payload: bytes) -> bool:
        if request_type == EXIT_STATUS_REQUEST and self._chan is not None and not self._closed:
            if self._chan.is_closing():
                return False
            # SSHServerChannel.exit() keeps only the low 8 bits; send the full uint32
            self._chan._send_request(b"exit-status", payload)
            self._chan.close()
            return True
        return await super().send_request(request_type, want_reply, payload)


class TCPChannelAdapter(ChannelAdapter, asyncssh.SSHTCPSession):
    """A "direct-tcpip" channel; it never carries requests."""


@dataclass
class PendingChannel:
    """A channel asyncssh has opened, waiting for the bridge's verdict."""

    channel_type: str
    adapter: ChannelAdapter
    extra_data: bytes = b""

    async def accept(self) -> ChannelAdapter:
        return self.adapter

    def reject(self, reason: int, message: str) -> None:
        logger.debug(f"Closing rejected {self.channel_type} channel: {message} ({reason})")
        self.adapter.close()


@dataclass
class ConnectionInfo:
    username: str
    peer: str
    connected_at: float
    bridge: Optional[Bridge] = None


class BridgeSSHConnection(asyncssh.SSHServer):
    """SSH server connection handler for a single client."""

    def __init__(self, server: "SSHBridgeServer"):
        self.server = server
        self.username: Optional[str] = None
        self.bridge: Optional[Bridge] = None
        self._conn: Optional[asyncssh.SSHServerConnection] = None
        self._peer = "unknown"
        self._connected_at = time.time()
        self._channels: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    def connection_made(self, conn: asyncssh.SSHServerConnection) -> None:
        self._conn = conn
        peername = conn.get_extra_info("peername")
        if peername:
            self._peer = f"{peername[0]}:{peername[1]}"
        logger.debug(f"SSH connection from {self._peer}")

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if exc:
            logger.warning(f"Connection {self.username}@{self._peer} lost: {exc}")
        else:
            logger.info(f"Connection {self.username}@{self._peer} closed")
        self._channels.put_nowait(None)
        self.server._forget(self)

    def begin_auth(self, username: str) -> bool:
        """Record the target container; no authentication is required."""
        self.username = username
        return False

    def password_auth_supported(self) -> bool:
        return False

    def public_key_auth_supported(self) -> bool:
        return False

    def auth_completed(self) -> None:
        if self._conn is None:
            logger.warning(f"Authentication completed for {self.username!r} without a connection")
            return
        try:
            provider = self.server.provider_factory(self.username or "")
        except Exception as e:
            logger.error(f"Cannot open backend for {self.username!r}", exc=e)
            self._conn.close()
            return

        self.bridge = Bridge(
            self._conn,
            iterate_queue(self._channels),
            provider,
            config=self.server.bridge_config,
            name=f"{self.username}@{self._peer}",
        )
        self._task = asyncio.ensure_future(self.bridge.start())
        self.server._register(self)
        logger.info(f"Connection {self.username}@{self._peer} authenticated")

    def _open(self, channel_type: str, adapter: ChannelAdapter, extra_data: bytes = b"") -> bool:
        if self.bridge is None or not self.bridge.supports(channel_type):
            return False
        self._channels.put_nowait(PendingChannel(channel_type, adapter, extra_data))
        return True

    def session_requested(self):
        adapter = SessionChannelAdapter()
        return adapter if self._open(CHANNEL_SESSION, adapter) else False

    def connection_requested(self, dest_host: str, dest_port: int, orig_host: str, orig_port: int):
        adapter = TCPChannelAdapter()
        extra_data = pack_direct_tcpip(dest_host, dest_port, orig_host, orig_port)
        return adapter if self._open(CHANNEL_DIRECT_TCPIP, adapter, extra_data) else False

    def server_requested(self, listen_host: str, listen_port: int) -> bool:
        logger.debug(f"Refusing remote forward {listen_host}:{listen_port}")
        return False

    def info(self) -> ConnectionInfo:
        return ConnectionInfo(
            username=self.username or "",
            peer=self._peer,
            connected_at=self._connected_at,
            bridge=self.bridge,
        )


def load_host_keys(patterns: List[str], generate: bool = False) -> List[asyncssh.SSHKey]:
    """Load every private key matching the configured paths or globs."""
    keys: List[asyncssh.SSHKey] = []
    for pattern in patterns:
        paths = sorted(glob.glob(pattern))
        if not paths:
            logger.debug(f"No host key matches {pattern}")
        for path in paths:
            try:
                keys.append(asyncssh.read_private_key(path))
                logger.debug(f"Loaded host key {path}")
            except (OSError, asyncssh.KeyImportError) as e:
                raise ConfigError(f"cannot load host key {path}: {e}") from e

    if not keys:
        if not generate:
            raise ConfigError(f"no host key found in {', '.join(patterns)}")
        logger.warning("No host key found, generating an ephemeral ed25519 key")
        keys.append(asyncssh.generate_private_key("ssh-ed25519"))
    return keys


class SSHBridgeServer:
    """SSH server exposing containers as hosts, one bridge per connection."""

    def __init__(self, config: HostConfigModel, provider_factory: ProviderFactory):
        self.config = config
        self.provider_factory = provider_factory
        self.bridge_config = BridgeConfig(
            default_command=config.command,
            relay_command=list(config.relay_command),
        )
        self.connections: Dict[int, BridgeSSHConnection] = {}
        self._server: Optional[asyncssh.SSHAcceptor] = None

    def _register(self, connection: BridgeSSHConnection) -> None:
        self.connections[id(connection)] = connection

    def _forget(self, connection: BridgeSSHConnection) -> None:
        self.connections.pop(id(connection), None)

    async def start(self) -> None:
        """Load host keys and start listening."""
        host_keys = load_host_keys(self.config.ssh.host_keys, self.config.ssh.generate_host_key)

        self._server = await asyncssh.listen(
            self.config.listen.address,
            self.config.listen.port,
            server_factory=lambda: BridgeSSHConnection(self),
            server_host_keys=host_keys,
            encoding=None,  # Binary mode
            line_editor=False,
            allow_pty=True,
            agent_forwarding=False,
            x11_forwarding=False,
            keepalive_interval=self.config.ssh.keepalive_interval,
            keepalive_count_max=self.config.ssh.keepalive_count_max,
        )
        logger.success(
            f"Listening on {self.config.listen.address}:{self.port} "
            f"(backend: {self.config.backend})"
        )

    async def serve_forever(self) -> None:
        """Start if needed and wait until the listener is closed."""
        if self._server is None:
            await self.start()
        await self._server.wait_closed()

    @property
    def port(self) -> int:
        if self._server is None:
            return self.config.listen.port
        return self._server.get_port()

    async def stop(self) -> None:
        """Stop listening and close every connection."""
        if self._server is not None:
            self._server.close()
        for connection in list(self.connections.values()):
            if connection.bridge is not None:
                await connection.bridge.stop()
        if self._server is not None:
            await self._server.wait_closed()
        logger.info("SSH server stopped")

    def get_stats(self) -> Dict[str, Any]:
        """Get server statistics."""
        return {
            "active_connections": len(self.connections),
            "connections": {
                info.peer: {
                    "container": info.username,
                    "connected_at": info.connected_at,
                    "channels": info.bridge.active_channels if info.bridge else 0,
                }
                for info in (conn.info() for conn in self.connections.values())
            },
        }
