# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""direct-tcpip channels relayed through a command inside the container."""

from __future__ import annotations

import asyncio
from typing import List, Sequence

from boxsshd.bridge.channel import Channel
from boxsshd.bridge.errors import BridgeError
from boxsshd.bridge.messages import DirectTcpipRequest, parse_direct_tcpip
from boxsshd.bridge.provider import ExecConfig, SessionProvider
from boxsshd.utils.logging import get_logger

logger = get_logger(__name__)


async def discard_requests(channel: Channel) -> None:
    """Refuse every request on a channel that carries none."""
    async for request in channel.requests():
        if request.want_reply:
            request.reply(False)


def relay_argv(relay_command: Sequence[str], target: DirectTcpipRequest) -> List[str]:
    return [*relay_command, target.host_to_connect, str(target.port_to_connect)]


async def handle_direct_tcpip(
    channel: Channel,
    extra_data: bytes,
    provider: SessionProvider,
    relay_command: Sequence[str] = ("nc",),
) -> None:
    """Pump a forwarded TCP stream through ``nc host port`` in the container.

    Failures are only logged; the channel is closed either way.
    """
    discard_task = asyncio.create_task(discard_requests(channel))
    try:
        try:
            target = parse_direct_tcpip(extra_data)
        except BridgeError as e:
            logger.warning(f"direct-tcpip: {e}")
            return

        label = f"direct-tcpip {target.host_to_connect}:{target.port_to_connect}"
        logger.debug(
            f"{label}: from {target.originator_ip}:{target.originator_port}",
        )
        config = ExecConfig(
            cmd=relay_argv(relay_command, target),
            tty=False,
            stdin=channel,
            stdout=channel,
        )
        try:
            completion = await provider.exec(config)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                f"{label}: direct-tcpip requires [{relay_command[0]}] installed inside container",
                exc=e,
            )
            return

        try:
            result = await completion
        except asyncio.CancelledError:
            completion.cancel()
            raise
        except Exception as e:
            logger.warning(f"{label}: relay failed: {e}")
            return

        if result.error is not None:
            logger.warning(f"{label}: relay ended with error: {result.error}")
        else:
            logger.debug(f"{label}: relay exited with {result.exit_code}")
    finally:
        channel.close()
        discard_task.cancel()
