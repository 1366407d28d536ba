# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Payload codecs for the SSH messages the bridge consumes and emits.

Layouts follow RFC 4254:

    pty-req        string term, uint32 width, uint32 height,
                   uint32 pixel_width, uint32 pixel_height, string modes
    window-change  uint32 width, uint32 height,
                   uint32 pixel_width, uint32 pixel_height
    env            string name, string value
    exec           string command
    direct-tcpip   string host, uint32 port, string orig_ip, uint32 orig_port
    exit-status    uint32 code
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Mapping, TypeVar

from asyncssh.packet import PacketDecodeError, SSHPacket, String, UInt32

from boxsshd.bridge.errors import MalformedPayloadError

UINT32_MASK = 0xFFFFFFFF

# Terminal mode list terminator (TTY_OP_END)
TTY_OP_END = 0

T = TypeVar("T")


@dataclass(frozen=True)
class PtyRequest:
    term: str
    width: int
    height: int
    pixel_width: int = 0
    pixel_height: int = 0
    modes: bytes = b""


@dataclass(frozen=True)
class WindowChange:
    width: int
    height: int
    pixel_width: int = 0
    pixel_height: int = 0


@dataclass(frozen=True)
class EnvRequest:
    name: str
    value: str

    def as_pair(self) -> str:
        return f"{self.name}={self.value}"


@dataclass(frozen=True)
class ExecRequest:
    command: str


@dataclass(frozen=True)
class DirectTcpipRequest:
    host_to_connect: str
    port_to_connect: int
    originator_ip: str
    originator_port: int


def _decode(request_type: str, payload: bytes, parse: Callable[[SSHPacket], T]) -> T:
    """Run a field parser over a payload and require it to be fully consumed."""
    packet = SSHPacket(payload)
    try:
        result = parse(packet)
        packet.check_end()
    except PacketDecodeError as e:
        raise MalformedPayloadError(request_type, str(e)) from e
    except UnicodeDecodeError as e:
        raise MalformedPayloadError(request_type, f"invalid UTF-8: {e.reason}") from e
    return result


def _text(packet: SSHPacket) -> str:
    return packet.get_string().decode("utf-8")


def parse_pty_request(payload: bytes) -> PtyRequest:
    return _decode(
        "pty-req",
        payload,
        lambda p: PtyRequest(
            term=_text(p),
            width=p.get_uint32(),
            height=p.get_uint32(),
            pixel_width=p.get_uint32(),
            pixel_height=p.get_uint32(),
            modes=p.get_string(),
        ),
    )


def parse_window_change(payload: bytes) -> WindowChange:
    return _decode(
        "window-change",
        payload,
        lambda p: WindowChange(
            width=p.get_uint32(),
            height=p.get_uint32(),
            pixel_width=p.get_uint32(),
            pixel_height=p.get_uint32(),
        ),
    )


def parse_env_request(payload: bytes) -> EnvRequest:
    return _decode("env", payload, lambda p: EnvRequest(name=_text(p), value=_text(p)))


def parse_exec_request(payload: bytes) -> ExecRequest:
    return _decode("exec", payload, lambda p: ExecRequest(command=_text(p)))


def parse_direct_tcpip(payload: bytes) -> DirectTcpipRequest:
    return _decode(
        "direct-tcpip",
        payload,
        lambda p: DirectTcpipRequest(
            host_to_connect=_text(p),
            port_to_connect=p.get_uint32(),
            originator_ip=_text(p),
            originator_port=p.get_uint32(),
        ),
    )


def parse_exit_status(payload: bytes) -> int:
    return _decode("exit-status", payload, lambda p: p.get_uint32())


def pack_terminal_modes(modes: Mapping[int, int]) -> bytes:
    """Encode a terminal mode mapping as opcode/uint32 pairs plus TTY_OP_END."""
    encoded = b"".join(bytes((opcode,)) + UInt32(value) for opcode, value in modes.items())
    return encoded + bytes((TTY_OP_END,))


def pack_pty_request(
    term: str,
    width: int,
    height: int,
    pixel_width: int = 0,
    pixel_height: int = 0,
    modes: bytes = bytes((TTY_OP_END,)),
) -> bytes:
    return (
        String(term)
        + UInt32(width)
        + UInt32(height)
        + UInt32(pixel_width)
        + UInt32(pixel_height)
        + String(modes)
    )


def pack_window_change(width: int, height: int, pixel_width: int = 0, pixel_height: int = 0) -> bytes:
    return UInt32(width) + UInt32(height) + UInt32(pixel_width) + UInt32(pixel_height)


def pack_env_request(name: str, value: str) -> bytes:
    return String(name) + String(value)


def pack_exec_request(command: str) -> bytes:
    return String(command)


def pack_direct_tcpip(host: str, port: int, originator_ip: str, originator_port: int) -> bytes:
    return String(host) + UInt32(port) + String(originator_ip) + UInt32(originator_port)


def pack_exit_status(exit_code: int) -> bytes:
    """Encode an exit code; negative sentinels wrap modulo 2**32."""
    return UInt32(exit_code & UINT32_MASK)
