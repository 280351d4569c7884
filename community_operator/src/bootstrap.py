from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Protocol

from kubernetes.client import Configuration

from community_operator.src.cache import CacheBuilder, new_filtered_cache_builder
from community_operator.src.config import OperatorConfig
from community_operator.src.errors import ConnectionUnavailableError, ConstructionError
from community_operator.src.kube import load_kube_configuration
from community_operator.src.manager import Manager, ManagerOptions, new_manager
from community_operator.src.reconciler import new_reconciler
from community_operator.src.scheme import Scheme, add_mongodb_community_to_scheme, new_scheme
from community_operator.src.scope import AllNamespacesFiltered, WatchScope

LOGGER = logging.getLogger(__name__)


class RegistrableReconciler(Protocol):
    def setup_with_manager(self, manager: Manager) -> None: ...


ReconcilerFactory = Callable[[Manager, OperatorConfig], RegistrableReconciler]


def cache_builder_for(scope: WatchScope) -> CacheBuilder | None:
    """Return a filtered cache builder for a filtered cluster-wide scope, else ``None``."""
    if isinstance(scope, AllNamespacesFiltered):
        return new_filtered_cache_builder(scope.selector)
    return None


def bootstrap(
    config: OperatorConfig,
    scope: WatchScope,
    *,
    load_connection: Callable[[], Configuration] = load_kube_configuration,
    manager_factory: Callable[[Configuration, ManagerOptions], Manager] = new_manager,
    reconciler_factory: ReconcilerFactory = new_reconciler,
    scheme: Scheme | None = None,
    logger: logging.Logger | None = None,
) -> Manager:
    """Connect to the cluster and build a manager with the reconciler registered.

    Stages run in order and the first failure is raised, so a partially
    built manager is never returned:

    1. ``connection`` — load the API server configuration.
    2. ``manager``    — construct the manager (and its cache) for *scope*.
    3. ``scheme``     — register ``MongoDBCommunity`` in the manager's scheme.
    4. ``reconciler`` — construct the reconciler and register it.
    """
    log = logger or LOGGER

    try:
        connection = load_connection()
    except ConnectionUnavailableError:
        raise
    except Exception as exc:
        raise ConnectionUnavailableError(f"Unable to get config: {exc}") from exc

    options = ManagerOptions(
        scheme=scheme if scheme is not None else new_scheme(),
        namespace=scope.manager_namespace,
        new_cache=cache_builder_for(scope),
        cache_sync_timeout_seconds=config.cache_sync_timeout_seconds,
        graceful_shutdown_timeout_seconds=config.graceful_shutdown_timeout_seconds,
    )
    try:
        manager = manager_factory(connection, options)
    except Exception as exc:
        raise ConstructionError(f"Unable to create manager: {exc}", stage="manager") from exc

    log.info("Registering components")

    try:
        add_mongodb_community_to_scheme(manager.scheme)
    except Exception as exc:
        raise ConstructionError(
            f"Unable to add MongoDBCommunity to scheme: {exc}", stage="scheme"
        ) from exc

    try:
        reconciler_factory(manager, config).setup_with_manager(manager)
    except Exception as exc:
        raise ConstructionError(f"Unable to create controller: {exc}", stage="reconciler") from exc

    return manager
