# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Tests for terminal size tracking."""

import pytest

from boxsshd.bridge.errors import ResizeError
from boxsshd.bridge.provider import ResizeOptions
from boxsshd.bridge.resize import ResizeCoordinator

from conftest import FakeProvider


class TestResizeCoordinator:
    """Tests for ResizeCoordinator."""

    @pytest.mark.asyncio
    async def test_size_before_start_stays_pending(self, provider):
        resizer = ResizeCoordinator(provider)

        applied = await resizer.resize(80, 24)

        assert applied is False
        assert resizer.pending is True
        assert provider.resize_calls == []

    @pytest.mark.asyncio
    async def test_pending_size_applied_once_started(self, provider):
        resizer = ResizeCoordinator(provider)
        await resizer.resize(80, 24)

        resizer.mark_started()
        applied = await resizer.apply_if_pending()

        assert applied is True
        assert resizer.pending is False
        assert provider.resize_calls == [ResizeOptions(width=80, height=24)]

    @pytest.mark.asyncio
    async def test_only_latest_size_is_applied(self, provider):
        resizer = ResizeCoordinator(provider)
        await resizer.resize(80, 24)
        await resizer.resize(132, 43)

        resizer.mark_started()
        await resizer.apply_if_pending()

        assert provider.resize_calls == [ResizeOptions(width=132, height=43)]

    @pytest.mark.asyncio
    async def test_zero_dimension_clears_pending(self, provider):
        resizer = ResizeCoordinator(provider)
        await resizer.resize(80, 24)
        await resizer.resize(0, 24)

        resizer.mark_started()

        assert resizer.pending is False
        assert await resizer.apply_if_pending() is False
        assert provider.resize_calls == []

    @pytest.mark.asyncio
    async def test_resize_after_start_applies_immediately(self, provider):
        resizer = ResizeCoordinator(provider)
        resizer.mark_started()

        assert await resizer.resize(100, 30) is True
        assert provider.resize_calls == [ResizeOptions(width=100, height=30)]

    @pytest.mark.asyncio
    async def test_failed_resize_stays_pending_for_retry(self):
        provider = FakeProvider(resize_error=ResizeError("not running yet"))
        resizer = ResizeCoordinator(provider)
        resizer.mark_started()

        assert await resizer.resize(80, 24) is False
        assert resizer.pending is True

        provider.resize_error = None
        assert await resizer.apply_if_pending() is True
        assert resizer.pending is False
        assert len(provider.resize_calls) == 2

    @pytest.mark.asyncio
    async def test_nothing_pending_is_a_noop(self, provider):
        resizer = ResizeCoordinator(provider)
        resizer.mark_started()

        assert await resizer.apply_if_pending() is False
        assert provider.resize_calls == []
