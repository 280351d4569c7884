from __future__ import annotations

import json
import logging
import os
import re

from community_operator.src.bootstrap import bootstrap
from community_operator.src.config import (
    REQUIRED_IMAGE_VARIABLES,
    has_required_variables,
    load_operator_config,
)
from community_operator.src.errors import OperatorError
from community_operator.src.health import start_health_server
from community_operator.src.lifecycle import run_manager, setup_signal_handler
from community_operator.src.metrics import METRICS
from community_operator.src.scope import resolve_watch_scope

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        # Credentials embedded in mongodb:// and mongodb+srv:// connection strings.
        re.compile(r"(?i)(mongodb(?:\+srv)?://[^:/@\s]+:)([^@\s]+)(@)"),
        r"\1[REDACTED]\3",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level_name: str) -> None:
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, level_name.upper(), logging.INFO))


def main() -> int:
    """Operator entrypoint: validate config, resolve the watch scope, build and run the manager."""
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    log = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    if not has_required_variables(REQUIRED_IMAGE_VARIABLES, logger=log):
        log.error("Startup failed at stage config: required environment variables are missing")
        return 1

    try:
        config = load_operator_config()
        scope = resolve_watch_scope(config.watch_namespace, config.label_selector)
        manager = bootstrap(config, scope)
    except OperatorError as exc:
        log.error("Startup failed at stage %s: %s", exc.stage, exc)
        return 1

    try:
        health_server = start_health_server(status=manager, port=config.health_port)
    except OSError as exc:
        log.error("Startup failed at stage health: %s", exc)
        return 1

    stop_event = setup_signal_handler()
    try:
        return run_manager(manager, stop_event)
    finally:
        health_server.shutdown()
        log.info("Operator stopped")


if __name__ == "__main__":
    raise SystemExit(main())
