# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""boxsshd - SSH access to Docker containers, Kubernetes pods and CRI sandboxes."""

__version__ = "0.1.0"
