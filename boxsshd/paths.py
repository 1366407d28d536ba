# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Centralized path definitions for boxsshd.

Usage:
    from boxsshd.paths import HostPaths, ServerDefaults

    config_file = HostPaths.config_file()
    log_file = HostPaths.log_file()
"""

import os
from pathlib import Path


class HostPaths:
    """Paths on the machine where the boxsshd daemon runs."""

    @staticmethod
    def config_dir() -> Path:
        """~/.config/boxsshd/"""
        return Path.home() / ".config" / "boxsshd"

    @staticmethod
    def config_file() -> Path:
        """~/.config/boxsshd/config.yml, or $BOXSSHD_CONFIG when set."""
        env_config = os.environ.get("BOXSSHD_CONFIG")
        if env_config:
            return Path(env_config)
        return HostPaths.config_dir() / "config.yml"

    @staticmethod
    def state_dir() -> Path:
        """~/.local/state/boxsshd/ (XDG_STATE_HOME aware)."""
        xdg_state = os.environ.get("XDG_STATE_HOME")
        base = Path(xdg_state) if xdg_state else Path.home() / ".local" / "state"
        return base / "boxsshd"

    @staticmethod
    def log_dir() -> Path:
        """~/.local/state/boxsshd/logs/"""
        return HostPaths.state_dir() / "logs"

    @staticmethod
    def log_file() -> Path:
        """~/.local/state/boxsshd/logs/boxsshd.log"""
        return HostPaths.log_dir() / "boxsshd.log"


class ServerDefaults:
    """Default values shared by the config models and the CLI."""

    LISTEN_ADDRESS = "0.0.0.0"
    LISTEN_PORT = 2232
    HOST_KEY = "/etc/ssh/ssh_host_ed25519_key"
    COMMAND = "/bin/sh"
    RELAY_COMMAND = ["nc"]

    # Keepalive settings for the SSH transport
    KEEPALIVE_INTERVAL = 15  # seconds
    KEEPALIVE_COUNT_MAX = 3  # missed keepalives before disconnect

    CRI_RUNTIME_ENDPOINT = "unix:///run/containerd/containerd.sock"
    KUBERNETES_NAMESPACE = "default"
