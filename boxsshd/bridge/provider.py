# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Backend capability contract.

Every container runtime (Docker, Kubernetes, CRI) is driven through the
three operations of SessionProvider. exec() returns a future that resolves
to an ExecResult when the command is gone; runtimes that cannot push a
completion event wrap poll_exit_code() behind that same future, so the
session code never knows which strategy a backend uses.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Protocol, Tuple

from boxsshd.utils.logging import get_logger

logger = get_logger(__name__)

# Exit code reported when the final status of a command cannot be determined
EXIT_CODE_UNKNOWN = -1

DEFAULT_POLL_INTERVAL = 1.0  # seconds
DEFAULT_EXEC_TIMEOUT = 10.0  # seconds


class StreamReader(Protocol):
    async def read(self, n: int = -1) -> bytes: ...


class StreamWriter(Protocol):
    def write(self, data: bytes) -> None: ...

    async def drain(self) -> None: ...


@dataclass
class ResizeOptions:
    width: int
    height: int


@dataclass
class ExecConfig:
    """Everything a backend needs to start one command."""

    cmd: List[str]
    env: List[str] = field(default_factory=list)  # ordered NAME=value entries
    tty: bool = False
    stdin: Optional[StreamReader] = None
    stdout: Optional[StreamWriter] = None
    stderr: Optional[StreamWriter] = None


@dataclass
class ExecResult:
    exit_code: int
    error: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and self.error is None


class SessionProvider(Protocol):
    """What the bridge needs from a container runtime."""

    async def exec(self, config: ExecConfig) -> asyncio.Future[ExecResult]:
        """Start a command and return its completion future.

        Raises ExecStartError when the command could not be launched.
        Cancelling the returned future stops the stream copy.
        """
        ...

    async def resize(self, size: ResizeOptions) -> None:
        """Resize the active command's terminal. Raises ResizeError."""
        ...

    async def close(self) -> None:
        """Release backend resources. Safe without a prior exec."""
        ...


def with_environment(cmd: List[str], env: List[str]) -> List[str]:
    """Prefix ``cmd`` with ``env NAME=value ...`` for runtimes without an env field."""
    if not env:
        return list(cmd)
    return ["env", *env, *cmd]


# (running, exit_code) as reported by a runtime's inspect call
InspectFn = Callable[[], Awaitable[Tuple[bool, Optional[int]]]]


async def poll_exit_code(
    inspect: InspectFn,
    interval: float = DEFAULT_POLL_INTERVAL,
    timeout: float = DEFAULT_EXEC_TIMEOUT,
    label: str = "exec",
) -> int:
    """Poll a runtime until the command stops or the timeout expires.

    Returns the reported exit code, or EXIT_CODE_UNKNOWN when the command
    is still running (or cannot be inspected) after ``timeout`` seconds.
    Total wait is bounded by timeout plus one interval.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout

    while True:
        try:
            running, exit_code = await inspect()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"{label}: inspect failed: {e}", console_output=False)
        else:
            if not running:
                return exit_code if exit_code is not None else EXIT_CODE_UNKNOWN

        if loop.time() >= deadline:
            logger.warning(
                f"{label}: no exit status after {timeout:g}s, reporting {EXIT_CODE_UNKNOWN}",
                console_output=False,
            )
            return EXIT_CODE_UNKNOWN
        await asyncio.sleep(interval)
