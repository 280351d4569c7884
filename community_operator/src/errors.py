from __future__ import annotations


class OperatorError(RuntimeError):
    """Base class for fatal operator startup and runtime failures.

    ``stage`` names the startup stage that failed so the entrypoint can emit
    a diagnostic identifying it before exiting.
    """

    stage = "operator"

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        super().__init__(message)
        if stage is not None:
            self.stage = stage


class ConfigurationError(OperatorError):
    """Raised when an environment variable is present but invalid."""

    stage = "config"


class MissingConfigurationError(ConfigurationError):
    """Raised when one or more required environment variables are absent."""

    def __init__(
        self,
        missing: list[str] | tuple[str, ...],
        message: str | None = None,
        *,
        stage: str | None = None,
    ) -> None:
        self.missing = tuple(missing)
        if message is None:
            message = "required environment variables not found: " + ", ".join(self.missing)
        super().__init__(message, stage=stage)


class InvalidSelectorError(OperatorError):
    """Raised when a label selector string cannot be parsed."""

    stage = "scope"


class ConnectionUnavailableError(OperatorError):
    stage = "connection"


class ConstructionError(OperatorError):
    """Raised when the manager, cache, scheme or reconciler cannot be built."""

    stage = "manager"


class SchemeError(ConstructionError):
    stage = "scheme"


class ManagerRuntimeError(OperatorError):
    """Raised when the manager run loop terminates because of an error."""

    stage = "run"


class CacheError(ManagerRuntimeError):
    pass
