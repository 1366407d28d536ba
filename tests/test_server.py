# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Tests for the asyncssh adapters and the SSH listener setup."""

import asyncio
from unittest.mock import MagicMock

import asyncssh
import pytest

from boxsshd.bridge.messages import (
    pack_exit_status,
    parse_direct_tcpip,
    parse_env_request,
    parse_exec_request,
    parse_pty_request,
    parse_window_change,
)
from boxsshd.host_config import ConfigError
from boxsshd.models.host_config import HostConfigModel
from boxsshd.server import (
    BridgeSSHConnection,
    SessionChannelAdapter,
    SSHBridgeServer,
    TCPChannelAdapter,
    load_host_keys,
)

from conftest import FakeProvider


def make_chan(environment=None):
    chan = MagicMock()
    chan.get_environment.return_value = dict(environment or {})
    chan.is_closing.return_value = False
    return chan


async def next_request(adapter):
    return await asyncio.wait_for(adapter._requests.get(), 1)


class TestSessionChannelAdapter:
    """Tests for SessionChannelAdapter."""

    @pytest.mark.asyncio
    async def test_exec_is_queued_after_environment(self):
        adapter = SessionChannelAdapter()
        chan = make_chan({"LANG": "C.UTF-8", "TZ": "UTC"})
        adapter.connection_made(chan)

        assert adapter.exec_requested("ls -l") is None

        first, second, start = [await next_request(adapter) for _ in range(3)]
        assert parse_env_request(first.payload).as_pair() == "LANG=C.UTF-8"
        assert parse_env_request(second.payload).as_pair() == "TZ=UTC"
        assert start.request_type == "exec"
        assert start.want_reply is True
        assert parse_exec_request(start.payload).command == "ls -l"

    @pytest.mark.asyncio
    async def test_start_reply_is_deferred_to_bridge(self):
        adapter = SessionChannelAdapter()
        chan = make_chan()
        adapter.connection_made(chan)

        adapter.shell_requested()
        request = await next_request(adapter)
        chan._report_response.assert_not_called()

        request.reply(False)
        chan._report_response.assert_called_once_with(False)

    @pytest.mark.asyncio
    async def test_pty_and_window_change_are_reencoded(self):
        adapter = SessionChannelAdapter()
        adapter.connection_made(make_chan())

        assert adapter.pty_requested("xterm", (120, 40, 0, 0), {}) is True
        adapter.terminal_size_changed(100, 30, 0, 0)

        pty = parse_pty_request((await next_request(adapter)).payload)
        change = parse_window_change((await next_request(adapter)).payload)
        assert (pty.term, pty.width, pty.height) == ("xterm", 120, 40)
        assert (change.width, change.height) == (100, 30)

    @pytest.mark.asyncio
    async def test_exit_status_is_sent_as_full_uint32(self):
        adapter = SessionChannelAdapter()
        chan = make_chan()
        adapter.connection_made(chan)

        sent = await adapter.send_request("exit-status", False, pack_exit_status(-1))

        assert sent is True
        chan._send_request.assert_called_once_with(b"exit-status", b"\xff\xff\xff\xff")
        chan.close.assert_called_once()
        chan.exit.assert_not_called()

    @pytest.mark.asyncio
    async def test_exit_status_not_sent_on_closing_channel(self):
        adapter = SessionChannelAdapter()
        chan = make_chan()
        chan.is_closing.return_value = True
        adapter.connection_made(chan)

        assert await adapter.send_request("exit-status", False, pack_exit_status(0)) is False
        chan._send_request.assert_not_called()

    @pytest.mark.asyncio
    async def test_stream_and_close(self):
        adapter = SessionChannelAdapter()
        chan = make_chan()
        adapter.connection_made(chan)

        adapter.data_received(b"typed", None)
        assert adapter.eof_received() is True
        assert await adapter.read() == b"typed"
        assert await adapter.read() == b""

        adapter.write(b"out")
        adapter.stderr.write(b"err")
        chan.write.assert_called_once_with(b"out")
        chan.write_stderr.assert_called_once_with(b"err")

        adapter.connection_lost(None)
        adapter.write(b"late")
        assert chan.write.call_count == 1
        assert [r async for r in adapter.requests()] == []

    @pytest.mark.asyncio
    async def test_subsystem_refused(self):
        assert SessionChannelAdapter().subsystem_requested("sftp") is False


class TestBridgeSSHConnection:
    """Tests for the per-client asyncssh server object."""

    def make_connection(self, factory):
        server = SSHBridgeServer(HostConfigModel(), factory)
        connection = BridgeSSHConnection(server)
        transport = MagicMock()
        transport.get_extra_info.return_value = ("10.0.0.5", 50022)
        connection.connection_made(transport)
        return server, connection, transport

    @pytest.mark.asyncio
    async def test_username_selects_container(self):
        targets = []
        provider = FakeProvider()

        def factory(name):
            targets.append(name)
            return provider

        server, connection, _ = self.make_connection(factory)

        assert connection.begin_auth("web-1") is False
        connection.auth_completed()

        assert targets == ["web-1"]
        assert server.get_stats()["active_connections"] == 1
        assert server.get_stats()["connections"]["10.0.0.5:50022"]["container"] == "web-1"

        connection.connection_lost(None)
        await asyncio.wait_for(connection._task, 1)
        assert provider.closed is True
        assert server.connections == {}

    @pytest.mark.asyncio
    async def test_channels_refused_before_auth(self):
        server, connection, _ = self.make_connection(lambda name: FakeProvider())

        assert connection.session_requested() is False

    @pytest.mark.asyncio
    async def test_channels_opened_after_auth(self):
        server, connection, _ = self.make_connection(lambda name: FakeProvider())
        connection.begin_auth("web")
        connection.auth_completed()

        session = connection.session_requested()
        tcp = connection.connection_requested("localhost", 8080, "127.0.0.1", 40000)

        assert isinstance(session, SessionChannelAdapter)
        assert isinstance(tcp, TCPChannelAdapter)
        assert connection.server_requested("", 9000) is False

        # The bridge task has not run yet, so both channels are still queued
        pending = [connection._channels.get_nowait() for _ in range(2)]
        assert [p.channel_type for p in pending] == ["session", "direct-tcpip"]
        assert parse_direct_tcpip(pending[1].extra_data).port_to_connect == 8080

        connection.connection_lost(None)
        await asyncio.wait_for(connection._task, 1)

    @pytest.mark.asyncio
    async def test_backend_failure_closes_connection(self):
        def factory(name):
            raise RuntimeError("docker unavailable")

        server, connection, transport = self.make_connection(factory)
        connection.begin_auth("web")
        connection.auth_completed()

        transport.close.assert_called_once()
        assert connection.bridge is None
        assert server.connections == {}

    def test_auth_without_transport_is_ignored(self):
        factory = MagicMock()
        connection = BridgeSSHConnection(SSHBridgeServer(HostConfigModel(), factory))

        connection.begin_auth("web")
        connection.auth_completed()

        factory.assert_not_called()
        assert connection.bridge is None


class TestLoadHostKeys:
    """Tests for load_host_keys()."""

    def test_loads_keys_matching_glob(self, tmp_path):
        for name in ("ssh_host_ed25519_key", "ssh_host_second_key"):
            asyncssh.generate_private_key("ssh-ed25519").write_private_key(str(tmp_path / name))

        keys = load_host_keys([str(tmp_path / "ssh_host_*_key")])

        assert len(keys) == 2

    def test_missing_keys_raise(self, tmp_path):
        with pytest.raises(ConfigError, match="no host key found"):
            load_host_keys([str(tmp_path / "missing_key")])

    def test_missing_keys_generated_on_request(self, tmp_path):
        keys = load_host_keys([str(tmp_path / "missing_key")], generate=True)

        assert len(keys) == 1
        assert keys[0].algorithm == b"ssh-ed25519"

    def test_invalid_key_raises(self, tmp_path):
        bad = tmp_path / "broken_key"
        bad.write_text("not a key")

        with pytest.raises(ConfigError, match="cannot load host key"):
            load_host_keys([str(bad)])


class TestSSHBridgeServer:
    def test_bridge_config_from_model(self):
        config = HostConfigModel(command="/bin/bash -l", relay_command=["socat", "-"])

        server = SSHBridgeServer(config, lambda name: FakeProvider())

        assert server.bridge_config.default_command == "/bin/bash -l"
        assert server.bridge_config.relay_command == ["socat", "-"]
        assert server.port == 2232
