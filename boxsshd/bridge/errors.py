# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Exceptions raised by the session bridge and its backends."""

from typing import Optional


class BridgeError(Exception):
    """Base class for errors that fail a single request or channel."""


class MalformedPayloadError(BridgeError):
    """A request or channel-open payload could not be decoded."""

    def __init__(self, request_type: str, reason: str):
        self.request_type = request_type
        self.reason = reason
        super().__init__(f"malformed {request_type} payload: {reason}")


class UnknownRequestError(BridgeError):
    """The session does not handle this request type."""

    def __init__(self, request_type: str):
        self.request_type = request_type
        super().__init__(f"unsupported request type: {request_type}")


class ExecAlreadyStartedError(BridgeError):
    """A command was already started on this session."""

    def __init__(self):
        super().__init__("exec was already called on this session")


class EmptyCommandError(BridgeError):
    """An exec request carried no command."""

    def __init__(self):
        super().__init__("exec command is empty")


class ExecStartError(BridgeError):
    """The backend could not launch the command."""

    def __init__(self, message: str, hint: Optional[str] = None):
        self.hint = hint
        super().__init__(message)


class ResizeError(BridgeError):
    """The backend could not resize the command's terminal."""
