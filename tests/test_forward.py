# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Tests for direct-tcpip forwarding through the in-container relay."""

import asyncio
import logging

import pytest

from boxsshd.bridge.errors import ExecStartError
from boxsshd.bridge.forward import handle_direct_tcpip, relay_argv
from boxsshd.bridge.messages import DirectTcpipRequest, pack_direct_tcpip

from conftest import FakeChannel, FakeProvider, wait_replied


class TestRelayArgv:
    def test_appends_host_and_port(self):
        target = DirectTcpipRequest("localhost", 8080, "10.0.0.1", 40000)

        assert relay_argv(["nc"], target) == ["nc", "localhost", "8080"]

    def test_custom_relay(self):
        target = DirectTcpipRequest("redis", 6379, "10.0.0.1", 40000)

        assert relay_argv(["socat", "-"], target) == ["socat", "-", "redis", "6379"]


class TestHandleDirectTcpip:
    """Tests for handle_direct_tcpip()."""

    @pytest.mark.asyncio
    async def test_runs_relay_without_tty(self, provider):
        channel = FakeChannel()
        extra = pack_direct_tcpip("localhost", 5432, "127.0.0.1", 51000)

        await handle_direct_tcpip(channel, extra, provider)

        config = provider.exec_calls[0]
        assert config.cmd == ["nc", "localhost", "5432"]
        assert config.tty is False
        assert config.stdin is channel
        assert config.stdout is channel
        assert config.env == []
        assert channel.closed is True

    @pytest.mark.asyncio
    async def test_relay_start_failure_is_logged(self, caplog):
        provider = FakeProvider(exec_error=ExecStartError("executable file not found"))
        channel = FakeChannel()
        extra = pack_direct_tcpip("localhost", 80, "127.0.0.1", 51000)

        with caplog.at_level(logging.ERROR, logger="boxsshd"):
            await handle_direct_tcpip(channel, extra, provider)

        assert "direct-tcpip requires [nc] installed inside container" in caplog.text
        assert channel.closed is True

    @pytest.mark.asyncio
    async def test_malformed_target_closes_channel(self, provider):
        channel = FakeChannel()

        await handle_direct_tcpip(channel, b"\x00\x00\x00\x03ab", provider)

        assert provider.exec_calls == []
        assert channel.closed is True

    @pytest.mark.asyncio
    async def test_requests_on_forward_channel_are_refused(self, held_provider):
        channel = FakeChannel()
        extra = pack_direct_tcpip("localhost", 80, "127.0.0.1", 51000)
        task = asyncio.create_task(handle_direct_tcpip(channel, extra, held_provider))

        request = channel.push("pty-req", b"")
        assert await wait_replied(request) is False

        held_provider.finish(0)
        await task
        assert channel.closed is True
