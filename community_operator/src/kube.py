from __future__ import annotations

import logging

from kubernetes import config
from kubernetes.client import Configuration
from kubernetes.config.config_exception import ConfigException

from community_operator.src.errors import ConnectionUnavailableError

LOGGER = logging.getLogger(__name__)


def load_kube_configuration() -> Configuration:
    """Return the connection configuration for the API server.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development. Raises
    :class:`ConnectionUnavailableError` when neither is available.
    """
    connection = Configuration()
    try:
        config.load_incluster_config(client_configuration=connection)
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
        return connection
    except ConfigException:
        LOGGER.debug("Not running in a cluster, trying local kubeconfig")

    try:
        config.load_kube_config(client_configuration=connection)
    except (ConfigException, OSError) as exc:
        raise ConnectionUnavailableError(f"Unable to get config: {exc}") from exc
    LOGGER.info("Loaded local kubeconfig")
    return connection
