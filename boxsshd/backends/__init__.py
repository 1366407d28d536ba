# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Container runtime backends.

create_provider_factory() builds the runtime client once per process and
returns a factory that creates one SessionProvider per SSH connection,
targeting the container named by the SSH username.
"""

from typing import Callable

from boxsshd.bridge.provider import SessionProvider
from boxsshd.host_config import ConfigError
from boxsshd.models.host_config import HostConfigModel
from boxsshd.utils.logging import get_logger

logger = get_logger(__name__)

ProviderFactory = Callable[[str], SessionProvider]

BACKENDS = ("docker", "kubernetes", "cri")


def _docker_factory(config: HostConfigModel) -> ProviderFactory:
    import docker
    from docker.errors import DockerException

    from boxsshd.backends.docker import DockerSessionProvider

    settings = config.docker
    try:
        if settings.base_url:
            client = docker.DockerClient(base_url=settings.base_url)
        else:
            client = docker.from_env()
    except DockerException as e:
        raise ConfigError(f"cannot connect to Docker: {e}") from e

    def factory(container: str) -> SessionProvider:
        return DockerSessionProvider(
            client,
            container,
            exec_timeout=settings.exec_timeout,
            poll_interval=settings.poll_interval,
        )

    return factory


def _kubernetes_factory(config: HostConfigModel) -> ProviderFactory:
    from kubernetes import client as k8s_client
    from kubernetes import config as k8s_config

    from boxsshd.backends.kubernetes import KubernetesSessionProvider

    settings = config.kubernetes
    try:
        k8s_config.load_kube_config(config_file=settings.kubeconfig, context=settings.context)
    except (k8s_config.ConfigException, OSError) as e:
        if settings.kubeconfig:
            raise ConfigError(f"cannot load kubeconfig {settings.kubeconfig}: {e}") from e
        logger.debug(f"No usable kubeconfig ({e}), trying in-cluster config")
        try:
            k8s_config.load_incluster_config()
        except k8s_config.ConfigException as incluster_error:
            raise ConfigError(f"no Kubernetes configuration found: {incluster_error}") from e

    api = k8s_client.CoreV1Api()

    def factory(pod: str) -> SessionProvider:
        return KubernetesSessionProvider(
            api, pod, namespace=settings.namespace, container=settings.container
        )

    return factory


def _cri_factory(config: HostConfigModel) -> ProviderFactory:
    from boxsshd.backends.cri import CRISessionProvider

    settings = config.cri

    def factory(container_id: str) -> SessionProvider:
        return CRISessionProvider(
            container_id,
            runtime_endpoint=settings.runtime_endpoint,
            image_endpoint=settings.image_endpoint,
            crictl=settings.crictl,
        )

    return factory


def create_provider_factory(config: HostConfigModel) -> ProviderFactory:
    """Return a per-connection provider factory for the configured backend."""
    builders = {
        "docker": _docker_factory,
        "kubernetes": _kubernetes_factory,
        "cri": _cri_factory,
    }
    builder = builders.get(config.backend)
    if builder is None:
        raise ConfigError(f"unknown backend: {config.backend}")
    logger.debug(f"Using {config.backend} backend")
    return builder(config)
