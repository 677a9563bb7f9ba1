from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from kubernetes import client, config
from kubernetes.config.config_exception import ConfigException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import ResourceNotFoundError

if TYPE_CHECKING:
    from dex_clients.src.config import ControllerConfig

LOGGER = logging.getLogger(__name__)

# Surfaces an Ingress may be served under, oldest first.
INGRESS_SURFACES: tuple[str, ...] = (
    "extensions/v1beta1",
    "networking.k8s.io/v1beta1",
    "networking.k8s.io/v1",
)


@dataclass(frozen=True)
class WatchTarget:
    """One (kind, apiVersion) pair to run a watch loop for."""

    kind: str
    api_version: str
    label_selector: str | None = None


def load_kube_configuration(kubeconfig: str | None = None, in_cluster: bool = False) -> None:
    """Load Kubernetes client configuration.

    ``in_cluster`` forces the service-account configuration. Otherwise the
    kubeconfig at *kubeconfig* is used, falling back to in-cluster config
    when that file does not exist (the default path inside a pod).
    """
    if in_cluster:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
        return

    if kubeconfig and os.path.exists(kubeconfig):
        config.load_kube_config(config_file=kubeconfig)
        LOGGER.info("Loaded kubeconfig from %s", kubeconfig)
        return

    try:
        config.load_incluster_config()
        LOGGER.info("Kubeconfig %s not found; loaded in-cluster Kubernetes configuration", kubeconfig)
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded default kubeconfig")


def build_dynamic_client() -> DynamicClient:
    """Return a discovery-backed dynamic client using the active kube configuration."""
    return DynamicClient(client.ApiClient())


def serves(dynamic_client: Any, api_version: str, kind: str) -> bool:
    """Return True if the API server's discovery documents list *kind* under *api_version*."""
    try:
        dynamic_client.resources.get(api_version=api_version, kind=kind)
    except ResourceNotFoundError:
        return False
    return True


def discover_ingress_surfaces(dynamic_client: Any) -> list[str]:
    """Probe discovery once and return every Ingress surface the cluster serves, oldest first."""
    surfaces = [
        api_version
        for api_version in INGRESS_SURFACES
        if serves(dynamic_client, api_version, "Ingress")
    ]
    if surfaces:
        LOGGER.info("Cluster serves Ingress under: %s", ", ".join(surfaces))
    else:
        LOGGER.warning("Cluster serves no known Ingress API version")
    return surfaces


def plan_watch_targets(settings: ControllerConfig, dynamic_client: Any) -> list[WatchTarget]:
    """Resolve the enabled kinds into the concrete watch loops to start.

    Ingress gets one target per served surface. ConfigMaps and Secrets are
    always ``v1`` and are scoped by the configured label selector.
    """
    targets: list[WatchTarget] = []
    if settings.watch_ingresses:
        targets.extend(
            WatchTarget(kind="Ingress", api_version=api_version)
            for api_version in discover_ingress_surfaces(dynamic_client)
        )
    if settings.watch_configmaps:
        targets.append(
            WatchTarget(kind="ConfigMap", api_version="v1", label_selector=settings.label_selector)
        )
    if settings.watch_secrets:
        targets.append(
            WatchTarget(kind="Secret", api_version="v1", label_selector=settings.label_selector)
        )
    return targets
