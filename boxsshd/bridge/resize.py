# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Terminal size tracking for one session channel.

pty-req and window-change may arrive before the command exists. The last
requested size is kept as pending until a started command accepts it.
"""

from __future__ import annotations

import asyncio

from boxsshd.bridge.provider import ResizeOptions, SessionProvider
from boxsshd.utils.logging import get_logger

logger = get_logger(__name__)


class ResizeCoordinator:
    """Applies the latest terminal size to a session's command."""

    def __init__(self, provider: SessionProvider, label: str = "session"):
        self._provider = provider
        self._label = label
        self._lock = asyncio.Lock()
        self.width = 0
        self.height = 0
        self.pending = False
        self.started = False

    def mark_started(self) -> None:
        self.started = True

    async def resize(self, width: int, height: int) -> bool:
        """Record a new size and try to apply it.

        A zero dimension clears the pending flag. Returns True if the backend
        accepted the size.
        """
        self.width = width
        self.height = height
        self.pending = width > 0 and height > 0
        return await self.apply_if_pending()

    async def apply_if_pending(self) -> bool:
        """Forward the recorded size if one is pending and a command runs.

        The flag is only cleared after the backend accepted the size, so a
        failed resize is retried on the next trigger.
        """
        if not self.pending or not self.started:
            return False

        async with self._lock:
            if not self.pending:
                return False

            size = ResizeOptions(width=self.width, height=self.height)
            try:
                await self._provider.resize(size)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"{self._label}: resize to {size.width}x{size.height} failed: {e}")
                return False

            # A newer size recorded meanwhile stays pending
            if (self.width, self.height) == (size.width, size.height):
                self.pending = False
            logger.debug(f"{self._label}: resized to {size.width}x{size.height}")
            return True
