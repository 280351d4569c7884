from __future__ import annotations

import logging
from dataclasses import dataclass

from community_operator.src.config import WATCH_NAMESPACE_ENV
from community_operator.src.errors import MissingConfigurationError
from community_operator.src.selector import LabelSelector, parse_selector

WILDCARD_NAMESPACE = "*"
# The runtime treats the empty namespace as "every namespace".
ALL_NAMESPACES = ""

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class SingleNamespace:
    """Watch exactly one namespace."""

    namespace: str

    @property
    def manager_namespace(self) -> str:
        return self.namespace


@dataclass(frozen=True)
class AllNamespaces:
    """Watch every namespace without filtering objects."""

    @property
    def manager_namespace(self) -> str:
        return ALL_NAMESPACES


@dataclass(frozen=True)
class AllNamespacesFiltered:
    """Watch every namespace, restricting the managed resource to ``selector``."""

    selector: LabelSelector

    @property
    def manager_namespace(self) -> str:
        return ALL_NAMESPACES


WatchScope = SingleNamespace | AllNamespaces | AllNamespacesFiltered


def resolve_watch_scope(
    namespace: str | None,
    label_selector: str | None,
    logger: logging.Logger | None = None,
) -> WatchScope:
    """Interpret the namespace and label selector directives.

    ``*`` selects cluster-wide watching, filtered when a label selector is
    given. Any other namespace selects single-namespace watching, where the
    label selector is not supported and is ignored with a warning.

    Raises :class:`MissingConfigurationError` when no namespace is given and
    :class:`InvalidSelectorError` when the selector cannot be parsed.
    """
    log = logger or LOGGER
    if namespace is None or not namespace.strip():
        raise MissingConfigurationError(
            [WATCH_NAMESPACE_ENV], "No namespace specified to watch", stage="scope"
        )

    if namespace != WILDCARD_NAMESPACE:
        if label_selector is not None:
            log.warning(
                "Ignoring label selector %r: label filtering is only supported "
                "when watching all namespaces",
                label_selector,
            )
        log.info("Watching namespace: %s", namespace)
        return SingleNamespace(namespace=namespace)

    log.info("Watching all namespaces")
    if label_selector is None:
        return AllNamespaces()

    log.info("Watching resources with label selector: %s", label_selector)
    return AllNamespacesFiltered(selector=parse_selector(label_selector))
