# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT

"""Pydantic models for ~/.config/boxsshd/config.yml."""

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from boxsshd.paths import ServerDefaults

BackendName = Literal["docker", "kubernetes", "cri"]


class _FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class ListenConfig(_FrozenModel):
    """Address the SSH listener binds to."""

    address: str = ServerDefaults.LISTEN_ADDRESS
    port: int = Field(default=ServerDefaults.LISTEN_PORT, ge=1, le=65535)


class SSHConfig(_FrozenModel):
    """SSH transport settings."""

    host_keys: List[str] = Field(default_factory=lambda: [ServerDefaults.HOST_KEY])
    generate_host_key: bool = False
    keepalive_interval: int = Field(default=ServerDefaults.KEEPALIVE_INTERVAL, ge=0)
    keepalive_count_max: int = Field(default=ServerDefaults.KEEPALIVE_COUNT_MAX, ge=1)


class DockerConfig(_FrozenModel):
    """Docker Engine backend settings."""

    base_url: Optional[str] = None
    exec_timeout: float = Field(default=10.0, gt=0)
    poll_interval: float = Field(default=1.0, gt=0)


class KubernetesConfig(_FrozenModel):
    """Kubernetes pod-exec backend settings."""

    namespace: str = ServerDefaults.KUBERNETES_NAMESPACE
    container: Optional[str] = None
    kubeconfig: Optional[str] = None
    context: Optional[str] = None


class CRIConfig(_FrozenModel):
    """CRI (crictl) backend settings."""

    runtime_endpoint: str = ServerDefaults.CRI_RUNTIME_ENDPOINT
    image_endpoint: str = ""
    crictl: str = "crictl"


class HostConfigModel(_FrozenModel):
    """Root model of the boxsshd configuration file."""

    listen: ListenConfig = Field(default_factory=ListenConfig)
    ssh: SSHConfig = Field(default_factory=SSHConfig)
    command: str = ServerDefaults.COMMAND
    relay_command: List[str] = Field(default_factory=lambda: list(ServerDefaults.RELAY_COMMAND))
    backend: BackendName = "docker"
    docker: DockerConfig = Field(default_factory=DockerConfig)
    kubernetes: KubernetesConfig = Field(default_factory=KubernetesConfig)
    cri: CRIConfig = Field(default_factory=CRIConfig)

    @field_validator("command")
    @classmethod
    def _command_not_blank(cls, value: str) -> str:
        if not value.split():
            raise ValueError("command must not be empty")
        return value

    @field_validator("relay_command")
    @classmethod
    def _relay_not_empty(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("relay_command must name at least the relay binary")
        return value
