# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Tests for command lifecycle and exit code polling."""

import asyncio

import pytest

from boxsshd.bridge.errors import ExecAlreadyStartedError
from boxsshd.bridge.execution import EXIT_STATUS_REQUEST, ExecLifecycle
from boxsshd.bridge.messages import pack_exit_status
from boxsshd.bridge.provider import (
    EXIT_CODE_UNKNOWN,
    ExecResult,
    ResizeOptions,
    poll_exit_code,
    with_environment,
)
from boxsshd.bridge.resize import ResizeCoordinator

from conftest import FakeChannel, FakeProvider


def make_lifecycle(provider, channel=None):
    channel = channel or FakeChannel()
    resizer = ResizeCoordinator(provider)
    return ExecLifecycle(channel, provider, resizer), channel, resizer


class TestExecLifecycle:
    """Tests for ExecLifecycle."""

    @pytest.mark.asyncio
    async def test_sends_exit_status_once_and_closes(self):
        provider = FakeProvider(exit_code=7)
        lifecycle, channel, _ = make_lifecycle(provider)

        await lifecycle.exec(["true"], [], tty=False)
        exit_code = await lifecycle.wait()

        assert exit_code == 7
        assert channel.sent_requests == [(EXIT_STATUS_REQUEST, pack_exit_status(7))]
        assert channel.closed is True

    @pytest.mark.asyncio
    async def test_second_start_raises(self, held_provider):
        lifecycle, channel, _ = make_lifecycle(held_provider)
        await lifecycle.exec(["sleep", "5"], [], tty=False)

        with pytest.raises(ExecAlreadyStartedError):
            await lifecycle.exec(["ls"], [], tty=False)

        assert len(held_provider.exec_calls) == 1
        held_provider.finish(0)
        await lifecycle.wait()

    @pytest.mark.asyncio
    async def test_concurrent_starts_reach_backend_once(self, held_provider):
        lifecycle, channel, _ = make_lifecycle(held_provider)

        results = await asyncio.gather(
            lifecycle.exec(["a"], [], tty=False),
            lifecycle.exec(["b"], [], tty=False),
            return_exceptions=True,
        )

        assert results[0] is None
        assert isinstance(results[1], ExecAlreadyStartedError)
        assert [c.cmd for c in held_provider.exec_calls] == [["a"]]
        held_provider.finish(0)
        await lifecycle.wait()

    @pytest.mark.asyncio
    async def test_failed_completion_reports_unknown_exit_code(self, held_provider):
        lifecycle, channel, _ = make_lifecycle(held_provider)
        await lifecycle.exec(["cat"], [], tty=False)

        held_provider.completion.set_exception(ConnectionResetError("stream lost"))
        exit_code = await lifecycle.wait()

        assert exit_code == EXIT_CODE_UNKNOWN
        assert channel.sent_requests == [(EXIT_STATUS_REQUEST, b"\xff\xff\xff\xff")]
        assert channel.closed is True

    @pytest.mark.asyncio
    async def test_result_error_still_reports_code(self, held_provider):
        lifecycle, channel, _ = make_lifecycle(held_provider)
        await lifecycle.exec(["cat"], [], tty=False)

        held_provider.completion.set_result(ExecResult(exit_code=0, error=OSError("copy failed")))

        assert await lifecycle.wait() == 0
        assert channel.sent_requests == [(EXIT_STATUS_REQUEST, pack_exit_status(0))]

    @pytest.mark.asyncio
    async def test_pending_resize_applied_after_start(self, held_provider):
        lifecycle, channel, resizer = make_lifecycle(held_provider)
        await resizer.resize(80, 24)

        await lifecycle.exec(["sh"], [], tty=True)

        assert held_provider.events == ["exec", "resize"]
        assert held_provider.resize_calls == [ResizeOptions(width=80, height=24)]
        held_provider.finish(0)
        await lifecycle.wait()

    @pytest.mark.asyncio
    async def test_cancel_stops_watching(self, held_provider):
        lifecycle, channel, _ = make_lifecycle(held_provider)
        await lifecycle.exec(["sleep", "60"], [], tty=False)
        assert lifecycle.running is True

        lifecycle.cancel()
        with pytest.raises(asyncio.CancelledError):
            await lifecycle.wait()

        assert held_provider.completion.cancelled()
        assert channel.sent_requests == []
        assert channel.closed is True


class TestPollExitCode:
    """Tests for poll_exit_code()."""

    @pytest.mark.asyncio
    async def test_returns_code_once_stopped(self):
        states = iter([(True, None), (True, None), (False, 5)])

        async def inspect():
            return next(states)

        assert await poll_exit_code(inspect, interval=0.001, timeout=5) == 5

    @pytest.mark.asyncio
    async def test_timeout_returns_unknown(self):
        async def inspect():
            return True, None

        assert await poll_exit_code(inspect, interval=0.01, timeout=0.05) == EXIT_CODE_UNKNOWN

    @pytest.mark.asyncio
    async def test_inspect_errors_are_retried(self):
        calls = []

        async def inspect():
            calls.append(1)
            if len(calls) < 3:
                raise OSError("daemon busy")
            return False, 0

        assert await poll_exit_code(inspect, interval=0.001, timeout=5) == 0
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_stopped_without_code_is_unknown(self):
        async def inspect():
            return False, None

        assert await poll_exit_code(inspect, interval=0.001, timeout=1) == EXIT_CODE_UNKNOWN


class TestWithEnvironment:
    def test_no_env_keeps_command(self):
        assert with_environment(["ls"], []) == ["ls"]

    def test_env_prefix(self):
        assert with_environment(["ls", "-l"], ["A=1", "B=2"]) == ["env", "A=1", "B=2", "ls", "-l"]
