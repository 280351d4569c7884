from __future__ import annotations

import threading
from collections.abc import Iterable
from dataclasses import dataclass

from community_operator.src.errors import SchemeError


@dataclass(frozen=True)
class ResourceType:
    """Identity and REST mapping of a Kubernetes resource kind."""

    group: str
    version: str
    kind: str
    plural: str
    namespaced: bool = True

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version

    @property
    def group_version_kind(self) -> tuple[str, str, str]:
        return (self.group, self.version, self.kind)

    def __str__(self) -> str:
        return f"{self.kind}.{self.api_version}"


CONFIG_MAP = ResourceType(group="", version="v1", kind="ConfigMap", plural="configmaps")
SECRET = ResourceType(group="", version="v1", kind="Secret", plural="secrets")
SERVICE = ResourceType(group="", version="v1", kind="Service", plural="services")
POD = ResourceType(group="", version="v1", kind="Pod", plural="pods")
STATEFUL_SET = ResourceType(group="apps", version="v1", kind="StatefulSet", plural="statefulsets")

MONGODB_COMMUNITY = ResourceType(
    group="mongodbcommunity.mongodb.com",
    version="v1",
    kind="MongoDBCommunity",
    plural="mongodbcommunity",
)

CORE_TYPES: tuple[ResourceType, ...] = (CONFIG_MAP, SECRET, SERVICE, POD, STATEFUL_SET)


class Scheme:
    """Registry of the resource types the operator can watch and decode.

    A scheme is built once at startup and handed by reference to the
    manager and the cache; there is no process-wide default instance.
    """

    def __init__(self) -> None:
        self._types: dict[tuple[str, str, str], ResourceType] = {}
        self._lock = threading.Lock()

    def add_known_types(self, resource_types: Iterable[ResourceType]) -> None:
        """Register *resource_types*.

        Registering the same definition twice is a no-op. Registering a
        different definition under an existing group/version/kind raises
        :class:`SchemeError`.
        """
        with self._lock:
            for resource_type in resource_types:
                existing = self._types.get(resource_type.group_version_kind)
                if existing is not None and existing != resource_type:
                    raise SchemeError(
                        f"{resource_type.kind} in {resource_type.api_version} is already "
                        f"registered with a different definition: {existing!r}"
                    )
                self._types[resource_type.group_version_kind] = resource_type

    def recognizes(self, resource_type: ResourceType) -> bool:
        with self._lock:
            return self._types.get(resource_type.group_version_kind) == resource_type

    def lookup(self, api_version: str, kind: str) -> ResourceType | None:
        group, _, version = api_version.rpartition("/")
        with self._lock:
            return self._types.get((group, version, kind))

    def known_types(self) -> list[ResourceType]:
        with self._lock:
            return list(self._types.values())


def add_core_to_scheme(scheme: Scheme) -> None:
    scheme.add_known_types(CORE_TYPES)


def add_mongodb_community_to_scheme(scheme: Scheme) -> None:
    scheme.add_known_types([MONGODB_COMMUNITY])


def new_scheme() -> Scheme:
    """Return a scheme with the core types and ``MongoDBCommunity`` registered."""
    scheme = Scheme()
    add_core_to_scheme(scheme)
    add_mongodb_community_to_scheme(scheme)
    return scheme
