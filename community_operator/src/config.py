from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from community_operator.src.errors import ConfigurationError, MissingConfigurationError

WATCH_NAMESPACE_ENV = "WATCH_NAMESPACE"
LABEL_SELECTOR_ENV = "LABEL_SELECTOR"
AGENT_IMAGE_ENV = "AGENT_IMAGE"
VERSION_UPGRADE_HOOK_IMAGE_ENV = "VERSION_UPGRADE_HOOK_IMAGE"
READINESS_PROBE_IMAGE_ENV = "READINESS_PROBE_IMAGE"

REQUIRED_IMAGE_VARIABLES: tuple[str, ...] = (
    AGENT_IMAGE_ENV,
    VERSION_UPGRADE_HOOK_IMAGE_ENV,
    READINESS_PROBE_IMAGE_ENV,
)

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImageConfig:
    """Container image references handed to the reconciler."""

    agent: str
    version_upgrade_hook: str
    readiness_probe: str


@dataclass(frozen=True)
class OperatorConfig:
    """Immutable operator configuration read once from the environment.

    Attributes:
        images:          Image references consumed by the reconciler.
        watch_namespace: Raw ``WATCH_NAMESPACE`` directive (``*`` or a name),
                         ``None`` when unset.
        label_selector:  Raw ``LABEL_SELECTOR`` directive, ``None`` when unset.
    """

    images: ImageConfig
    watch_namespace: str | None
    label_selector: str | None
    health_port: int = 8080
    cache_sync_timeout_seconds: int = 120
    graceful_shutdown_timeout_seconds: int = 30
    max_concurrent_reconciles: int = 1


def missing_variables(names: Iterable[str], env: Mapping[str, str]) -> list[str]:
    """Return every name from *names* that is absent from *env*, in order."""
    return [name for name in names if name not in env]


def has_required_variables(
    names: Iterable[str],
    env: Mapping[str, str] | None = None,
    logger: logging.Logger | None = None,
) -> bool:
    """Log one error per missing variable and return whether all are present.

    Presence is what counts: a variable set to the empty string is present.
    """
    values = env if env is not None else os.environ
    log = logger or LOGGER
    missing = missing_variables(names, values)
    for name in missing:
        log.error("required environment variable %s not found", name)
    return not missing


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigurationError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigurationError(f"{name} must be <= {maximum}, got: {value}")
    return value


def load_operator_config(env: Mapping[str, str] | None = None) -> OperatorConfig:
    """Build an :class:`OperatorConfig` from the environment.

    Raises :class:`MissingConfigurationError` listing every missing image
    variable. ``WATCH_NAMESPACE`` is carried as-is; deciding what an absent
    or wildcard namespace means is left to the scope resolver.
    """
    values = env if env is not None else os.environ

    missing = missing_variables(REQUIRED_IMAGE_VARIABLES, values)
    if missing:
        raise MissingConfigurationError(missing)

    return OperatorConfig(
        images=ImageConfig(
            agent=values[AGENT_IMAGE_ENV],
            version_upgrade_hook=values[VERSION_UPGRADE_HOOK_IMAGE_ENV],
            readiness_probe=values[READINESS_PROBE_IMAGE_ENV],
        ),
        watch_namespace=values.get(WATCH_NAMESPACE_ENV),
        label_selector=values.get(LABEL_SELECTOR_ENV),
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535, env=values),
        cache_sync_timeout_seconds=env_int(
            "CACHE_SYNC_TIMEOUT_SECONDS", 120, minimum=1, env=values
        ),
        graceful_shutdown_timeout_seconds=env_int(
            "GRACEFUL_SHUTDOWN_TIMEOUT_SECONDS", 30, minimum=0, env=values
        ),
        max_concurrent_reconciles=env_int(
            "MAX_CONCURRENT_RECONCILES", 1, minimum=1, maximum=64, env=values
        ),
    )
